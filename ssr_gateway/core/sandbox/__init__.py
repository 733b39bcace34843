"""
Evaluation Sandbox
==================

Process-isolated execution of page module render functions.

Components:
- props: Validation of the property bag before it crosses the process boundary
- runtime: Names injected into page modules (h, Fragment, require) and tree normalization
- isolation: Read-only module views and shared state change detection
- worker: Sandbox process main loop
- pool: Pool of sandbox processes with timeout enforcement
- evaluator: Host-side facade mapping sandbox outcomes to gateway errors

The sandbox isolates renders from the host and from each other. It is not a
security boundary against deliberately hostile code.
"""
