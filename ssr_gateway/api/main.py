"""
FastAPI Application
==================

Application factory serving static assets from the public directory and
server-rendered pages through the SSR gateway. Render failures are logged
with full context and answered with a generic error page.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional
import asyncio
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import HTMLResponse, Response
from fastapi.staticfiles import StaticFiles
import jinja2

from ssr_gateway.api.routes.health import router as health_router
from ssr_gateway.api.routes.pages import router as pages_router
from ssr_gateway.config.logging import get_logger
from ssr_gateway.config.settings import Settings, get_settings
from ssr_gateway.core.errors import ConfigurationError, GatewayError
from ssr_gateway.core.gateway import new_with_options

logger = get_logger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"

template_env = jinja2.Environment(
    loader=jinja2.FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=jinja2.select_autoescape(["html", "xml"]),
    enable_async=True,
)


async def render_error_page(status_code: int, request_id: Optional[str]) -> str:
    """Render the generic error page; no diagnostic detail is included."""
    template = template_env.get_template("error.html")
    return await template.render_async(
        status_code=status_code,
        title="Internal Server Error",
        message="The page could not be rendered. Please try again later.",
        request_id=request_id,
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application settings; defaults to the global settings

    Returns:
        Configured FastAPI application. The gateway is created on startup
        and closed on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        logger.info("Starting SSR gateway application", source_dir=str(settings.source_dir))

        try:
            gateway = new_with_options(settings.gateway_options())
        except ConfigurationError as e:
            logger.error("Invalid gateway configuration", error=str(e))
            raise RuntimeError(f"Gateway initialization failed: {e}") from e

        if settings.sandbox_warm_start:
            started = await asyncio.to_thread(gateway.start)
            logger.info("Sandbox pool started", contexts=started)

        app.state.gateway = gateway
        try:
            yield
        finally:
            logger.info("Shutting down SSR gateway application")
            await gateway.aclose()

    app = FastAPI(
        title=settings.app_name,
        description="Server-side rendering of Python page modules to HTML",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings

    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next) -> Response:  # type: ignore
        """Add request ID to all requests."""
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        return response

    @app.exception_handler(GatewayError)
    async def gateway_exception_handler(request: Request, exc: GatewayError) -> HTMLResponse:
        """Log render failures and answer with a generic error page."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(
            "Render request failed",
            path=request.url.path,
            request_id=request_id,
            **exc.to_dict(),
        )
        html = await render_error_page(500, request_id)
        return HTMLResponse(html, status_code=500)

    app.include_router(health_router)

    if settings.static_dir.is_dir():
        app.mount(
            settings.public_path,
            StaticFiles(directory=str(settings.static_dir)),
            name="public",
        )
    else:
        logger.warning("Static directory not found, assets disabled", static_dir=str(settings.static_dir))

    app.include_router(pages_router)
    return app
