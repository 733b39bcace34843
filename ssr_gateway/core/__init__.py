"""
Core Business Logic
==================

Core rendering pipeline for server-side rendering of page modules.

Modules:
- modules: Page module resolution, compilation and caching
- sandbox: Process-isolated evaluation of page render functions
- rendering: Element tree model and HTML serialization
- gateway: Public facade orchestrating loader, sandbox and serializer
- errors: Shared exception hierarchy
"""
