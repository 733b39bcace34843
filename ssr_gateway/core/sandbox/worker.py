"""
Sandbox Worker
==============

Main loop of a sandbox context process. The parent sends an
``ExecutionRequest`` per render over a pipe; the worker answers with an
``ExecutionResponse`` holding either the element tree or a failure
description. The worker never logs; the host side reports outcomes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import pickle
import signal
import traceback

from ssr_gateway.core.rendering.elements import Node
from ssr_gateway.core.sandbox.isolation import SharedState
from ssr_gateway.core.sandbox.runtime import ModuleRegistry, to_node, to_sandbox

READY = "ready"


@dataclass
class ExecutionRequest:
    """One render call shipped to a sandbox context."""

    module_id: str
    entry: str
    modules: Dict[str, bytes]
    links: Dict[str, Dict[str, str]]
    props: Dict[str, Any] = field(default_factory=dict)
    allowed_imports: Tuple[str, ...] = ()


@dataclass
class ExecutionResponse:
    """Outcome of one render call."""

    ok: bool
    module_id: str
    tree: Optional[Node] = None
    error: str = ""
    details: Optional[str] = None
    # False when the render changed state shared with later renders
    reusable: bool = True


def _failing_module(exc: BaseException, modules: Dict[str, bytes], default: str) -> str:
    """Innermost page module on the traceback, or ``default``."""
    module_id = default
    tb = exc.__traceback__
    while tb is not None:
        filename = tb.tb_frame.f_code.co_filename
        if filename in modules:
            module_id = filename
        tb = tb.tb_next
    return module_id


def _page_traceback(exc: BaseException, modules: Dict[str, bytes]) -> str:
    """Traceback limited to frames from page modules."""
    frames: List[traceback.FrameSummary] = [
        frame for frame in traceback.extract_tb(exc.__traceback__) if frame.filename in modules
    ]
    lines = ["Traceback (most recent call last):\n"]
    lines.extend(traceback.format_list(frames))
    lines.extend(traceback.format_exception_only(type(exc), exc))
    return "".join(lines)


def execute(request: ExecutionRequest) -> ExecutionResponse:
    """Run a page module's entry point against fresh module instances."""
    shared_state = SharedState.for_imports(request.allowed_imports)
    response = _run(request)
    if shared_state.changed():
        response.reusable = False
    return response


def _run(request: ExecutionRequest) -> ExecutionResponse:
    registry = ModuleRegistry(request.modules, request.links, request.allowed_imports)

    try:
        namespace = registry.execute(request.module_id)
        entry = namespace.get(request.entry)
        if not callable(entry):
            return ExecutionResponse(
                ok=False,
                module_id=request.module_id,
                error=f"entry point '{request.entry}' is not callable",
            )
        tree = to_node(entry(to_sandbox(request.props)))
    except (Exception, SystemExit) as e:
        return ExecutionResponse(
            ok=False,
            module_id=_failing_module(e, request.modules, request.module_id),
            error=f"{type(e).__name__}: {e}",
            details=_page_traceback(e, request.modules),
        )

    return ExecutionResponse(ok=True, module_id=request.module_id, tree=tree)


def serve(conn: Any) -> None:
    """
    Sandbox process entry point.

    Args:
        conn: Child end of a duplex ``multiprocessing`` pipe
    """
    # Interrupts are delivered to the host, which tears contexts down itself
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    conn.send(READY)

    while True:
        try:
            request = conn.recv()
        except (EOFError, OSError):
            break
        if request is None:
            break

        response = execute(request)
        try:
            conn.send(response)
        except (pickle.PicklingError, RecursionError, TypeError, AttributeError) as e:
            conn.send(
                ExecutionResponse(
                    ok=False,
                    module_id=request.module_id,
                    error=f"element tree could not be transferred: {type(e).__name__}: {e}",
                )
            )

    conn.close()
