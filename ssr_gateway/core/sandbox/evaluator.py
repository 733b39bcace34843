"""
Evaluation Sandbox Facade
=========================

Host-side entry point for executing a compiled module bundle. Leases a
sandbox context, enforces the deadline and maps sandbox outcomes onto the
gateway error hierarchy.
"""

from typing import Any, Dict, Optional, Tuple
import threading

from ssr_gateway.config.logging import get_logger
from ssr_gateway.core.errors import RenderCancelledError, RenderRuntimeError, RenderTimeoutError
from ssr_gateway.core.modules.loader import ModuleBundle
from ssr_gateway.core.rendering.elements import Node
from ssr_gateway.core.sandbox.pool import (
    SandboxCancelled,
    SandboxCrashed,
    SandboxPool,
    SandboxPoolClosed,
    SandboxTimeout,
)
from ssr_gateway.core.sandbox.worker import ExecutionRequest
from ssr_gateway.models.schemas import DEFAULT_ALLOWED_IMPORTS, PoolStats

logger = get_logger(__name__)


class EvaluationSandbox:
    """Executes page module bundles in pooled sandbox contexts."""

    def __init__(
        self,
        pool: SandboxPool,
        timeout: float = 5.0,
        allowed_imports: Tuple[str, ...] = DEFAULT_ALLOWED_IMPORTS,
    ) -> None:
        self.pool = pool
        self.timeout = timeout
        self.allowed_imports = tuple(allowed_imports)
        self.logger: Any = logger.bind(component="sandbox")  # structlog.BoundLoggerBase

    def execute(
        self,
        bundle: ModuleBundle,
        props: Dict[str, Any],
        cancel_event: Optional[threading.Event] = None,
    ) -> Node:
        """
        Run a bundle's entry point with props and return the element tree.

        Args:
            bundle: Compiled page module and its dependencies
            props: Validated plain props
            cancel_event: Set to abandon the render and kill its context

        Returns:
            Root node of the element tree

        Raises:
            RenderTimeoutError: If the render exceeds the deadline
            RenderRuntimeError: If the module raises, returns an unsupported
                value, or its context dies
        """
        module_id = bundle.entry_module
        request = ExecutionRequest(
            module_id=module_id,
            entry=bundle.entry,
            modules=bundle.modules,
            links=bundle.links,
            props=props,
            allowed_imports=self.allowed_imports,
        )

        try:
            with self.pool.context() as context:
                response = context.execute(request, self.timeout, cancel_event)
        except SandboxTimeout:
            self.logger.warning("Render deadline exceeded", module=module_id, timeout=self.timeout)
            raise RenderTimeoutError(module_id, self.timeout) from None
        except SandboxCancelled:
            self.logger.info("Render cancelled", module=module_id)
            raise RenderCancelledError(module_id, "render was cancelled") from None
        except SandboxCrashed as e:
            self.logger.error("Sandbox context crashed", module=module_id, error=str(e))
            raise RenderRuntimeError(module_id, str(e)) from None
        except SandboxPoolClosed as e:
            raise RenderRuntimeError(module_id, str(e)) from None

        if not response.ok:
            raise RenderRuntimeError(response.module_id, response.error, response.details)
        return response.tree

    def start(self) -> int:
        """Pre-spawn sandbox contexts."""
        return self.pool.warm()

    def close(self) -> None:
        self.pool.close()

    def stats(self) -> PoolStats:
        return self.pool.stats()
