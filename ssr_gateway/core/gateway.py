"""
Rendering Gateway
=================

Public entry point for server-side rendering. Validates options once at
construction, then runs Loader -> Sandbox -> Serializer for every render
call and reports every failure as a ``GatewayError`` subclass.
"""

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple, Union
import asyncio
import os
import threading
import time
import weakref

from pydantic import ValidationError

from ssr_gateway.config.logging import get_logger
from ssr_gateway.core.errors import (
    ConfigurationError,
    GatewayError,
    RenderCancelledError,
    RenderRuntimeError,
)
from ssr_gateway.core.modules.loader import ModuleLoader
from ssr_gateway.core.rendering.html_serializer import HTMLSerializer
from ssr_gateway.core.sandbox.evaluator import EvaluationSandbox
from ssr_gateway.core.sandbox.pool import SandboxPool
from ssr_gateway.core.sandbox.props import validate_props
from ssr_gateway.models.schemas import CacheStats, GatewayOptions, PoolStats

logger = get_logger(__name__)


def _shutdown(pool: SandboxPool, executor: ThreadPoolExecutor) -> None:
    executor.shutdown(wait=False, cancel_futures=True)
    pool.close()


def _check_source_dir(source_dir: Path) -> Path:
    if not source_dir.exists():
        raise ConfigurationError(f"source_dir does not exist: {source_dir}")
    if not source_dir.is_dir():
        raise ConfigurationError(f"source_dir is not a directory: {source_dir}")
    if not os.access(source_dir, os.R_OK | os.X_OK):
        raise ConfigurationError(f"source_dir is not readable: {source_dir}")
    return source_dir.resolve()


class SSRGateway:
    """Server-side rendering gateway bound to one source directory."""

    def __init__(self, options: GatewayOptions) -> None:
        """
        Initialize the gateway.

        Args:
            options: Validated gateway options

        Raises:
            ConfigurationError: If the source directory is unusable
        """
        self.options = options
        self.source_dir = _check_source_dir(Path(options.source_dir))
        self.logger: Any = logger.bind(component="ssr_gateway")  # structlog.BoundLoggerBase

        self.loader = ModuleLoader(
            self.source_dir,
            extensions=options.module_extensions,
            fingerprint=options.fingerprint,
            entry_point=options.entry_point,
        )
        pool = SandboxPool(
            size=options.pool_size,
            start_method=options.start_method.value,
            max_renders_per_context=options.max_renders_per_context,
            startup_timeout=options.startup_timeout,
        )
        self.sandbox = EvaluationSandbox(
            pool, timeout=options.render_timeout, allowed_imports=options.allowed_imports
        )
        self.serializer = HTMLSerializer(doctype=options.doctype)

        self._executor = ThreadPoolExecutor(
            max_workers=options.pool_size, thread_name_prefix="ssr-render"
        )
        self._closed = False
        self._finalizer = weakref.finalize(self, _shutdown, pool, self._executor)

        self.logger.info(
            "SSR gateway created",
            source_dir=str(self.source_dir),
            public_path=options.public_path,
            pool_size=options.pool_size,
            render_timeout=options.render_timeout,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    # Rendering

    async def render(self, page_path: str, props: Optional[Mapping[str, Any]] = None) -> str:
        """
        Render a page module to HTML.

        Args:
            page_path: Page module path relative to the source directory
            props: Properties passed to the module's render function

        Returns:
            Complete HTML string

        Raises:
            PageModuleNotFoundError: If the page does not resolve inside the source directory
            CompileError: If the page or one of its dependencies fails to compile
            RenderRuntimeError: If the render function raises or returns an unsupported value
            RenderTimeoutError: If the render exceeds the configured deadline
            UnsupportedPropertyError: If props contain an unsupported value
        """
        if self._closed:
            raise GatewayError("Gateway is closed")

        loop = asyncio.get_running_loop()
        cancel_event = threading.Event()
        try:
            return await loop.run_in_executor(
                self._executor, self._render, page_path, props, cancel_event
            )
        except asyncio.CancelledError:
            # The worker thread notices the event and kills the sandbox context
            cancel_event.set()
            raise

    def render_sync(
        self,
        page_path: str,
        props: Optional[Mapping[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Blocking variant of ``render`` that runs in the caller's thread."""
        return self._render(page_path, props, cancel_event)

    def _render(
        self,
        page_path: str,
        props: Optional[Mapping[str, Any]],
        cancel_event: Optional[threading.Event],
    ) -> str:
        if self._closed:
            raise GatewayError("Gateway is closed")

        start_time = time.perf_counter()
        self.logger.debug("Rendering page", page=page_path)

        try:
            plain_props = validate_props(props, sort_keys=self.options.sort_prop_keys)
            bundle = self.loader.load(page_path)
            if cancel_event is not None and cancel_event.is_set():
                raise RenderCancelledError(bundle.entry_module, "render was cancelled")
            tree = self.sandbox.execute(bundle, plain_props, cancel_event)
            html = self.serializer.serialize(tree, bundle.entry_module)
        except GatewayError as e:
            self.logger.warning(
                "Page render failed",
                page=page_path,
                duration=round(time.perf_counter() - start_time, 4),
                **e.to_dict(),
            )
            raise
        except Exception as e:
            self.logger.error(
                "Unexpected page render failure", page=page_path, error=str(e), exc_info=True
            )
            raise RenderRuntimeError(None, f"{type(e).__name__}: {e}") from e

        self.logger.info(
            "Page rendered",
            page=page_path,
            module=bundle.entry_module,
            modules=len(bundle.modules),
            html_length=len(html),
            duration=round(time.perf_counter() - start_time, 4),
        )
        return html

    # Module cache

    def preload(self, page_path: str) -> Tuple[str, ...]:
        """
        Compile a page and its dependencies without executing them.

        Returns:
            Module ids of the page followed by its dependencies
        """
        bundle = self.loader.load(page_path)
        dependencies = sorted(m for m in bundle.modules if m != bundle.entry_module)
        return (bundle.entry_module, *dependencies)

    def invalidate(self, page_path: Optional[str] = None) -> int:
        """Drop one cached page module, or the whole cache when ``page_path`` is None."""
        return self.loader.invalidate(page_path)

    def cache_stats(self) -> CacheStats:
        return self.loader.stats()

    def pool_stats(self) -> PoolStats:
        return self.sandbox.stats()

    # Lifecycle

    def start(self) -> int:
        """Pre-spawn sandbox contexts. Returns how many were started."""
        if self._closed:
            raise GatewayError("Gateway is closed")
        return self.sandbox.start()

    def close(self) -> None:
        """Shut down the sandbox pool and render threads."""
        if self._closed:
            return
        self._closed = True
        self._finalizer()
        self.logger.info("SSR gateway closed")

    async def aclose(self) -> None:
        await asyncio.to_thread(self.close)

    def __enter__(self) -> "SSRGateway":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    async def __aenter__(self) -> "SSRGateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def _describe_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "options"
        problems.append(f"{location}: {item['msg']}")
    return "Invalid gateway options: " + "; ".join(problems)


def new_with_options(
    options: Union[GatewayOptions, Mapping[str, Any], None] = None,
) -> SSRGateway:
    """
    Create a gateway from options.

    Args:
        options: ``GatewayOptions`` or a mapping of option fields
            (snake_case or camelCase); ``None`` uses defaults

    Returns:
        Configured SSRGateway

    Raises:
        ConfigurationError: If options are malformed or the source directory is unusable
    """
    if options is None:
        options = GatewayOptions()
    elif not isinstance(options, GatewayOptions):
        if not isinstance(options, Mapping):
            raise ConfigurationError(
                f"options must be GatewayOptions or a mapping, got {type(options).__name__}"
            )
        try:
            options = GatewayOptions.model_validate(dict(options))
        except ValidationError as e:
            raise ConfigurationError(_describe_validation_error(e)) from None

    return SSRGateway(options)
