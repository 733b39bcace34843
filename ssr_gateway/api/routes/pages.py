"""
Page Routes
===========

Render page modules for incoming GET requests.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse

from ssr_gateway.config.settings import Settings
from ssr_gateway.core.gateway import SSRGateway

router = APIRouter(tags=["Pages"])


def get_gateway(request: Request) -> SSRGateway:
    """Dependency returning the application's gateway."""
    return request.app.state.gateway


def get_app_settings(request: Request) -> Settings:
    """Dependency returning the settings the application was created with."""
    return request.app.state.settings


def page_module_path(settings: Settings, page: str) -> str:
    """Map a URL page name onto a module path under the source directory."""
    page = page.strip("/") or settings.index_page
    if settings.pages_dir:
        return f"{settings.pages_dir.strip('/')}/{page}"
    return page


def page_props(request: Request, settings: Settings) -> Dict[str, Any]:
    """Properties every page receives."""
    return {
        "title": settings.app_name,
        "path": request.url.path,
        "query": dict(request.query_params),
    }


@router.get("/", response_class=HTMLResponse)
async def render_index(
    request: Request,
    gateway: SSRGateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
) -> HTMLResponse:
    """Render the index page."""
    html = await gateway.render(page_module_path(settings, ""), page_props(request, settings))
    return HTMLResponse(html)


@router.get("/{page:path}", response_class=HTMLResponse)
async def render_page(
    page: str,
    request: Request,
    gateway: SSRGateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
) -> HTMLResponse:
    """Render ``pages_dir/<page>``."""
    html = await gateway.render(page_module_path(settings, page), page_props(request, settings))
    return HTMLResponse(html)
