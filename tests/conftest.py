"""
Test Configuration
==================

Pytest configuration with fixtures for all test types.
Provides test settings, gateways bound to the fixture page modules, and
scratch source directories for tests that edit modules on disk.
"""

import os

os.environ.setdefault("SSR_GATEWAY_ENVIRONMENT", "testing")

import textwrap
import time
from pathlib import Path
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient

from ssr_gateway.api.main import create_app
from ssr_gateway.config.settings import Settings
from ssr_gateway.core.gateway import SSRGateway, new_with_options
from ssr_gateway.core.modules.loader import ModuleLoader

FIXTURES_DIR = Path(__file__).parent / "fixtures"


# Test settings override
class TestSettings(Settings):
    """Test-specific settings."""

    environment: str = "testing"
    debug: bool = True
    source_dir: Path = FIXTURES_DIR
    static_dir: Path = FIXTURES_DIR / "public"
    pages_dir: str = "pages"
    sandbox_pool_size: int = 2  # Smaller pool for tests
    sandbox_warm_start: bool = False
    render_timeout: float = 5.0
    log_level: str = "DEBUG"


@pytest.fixture(scope="session")
def test_settings() -> TestSettings:
    """Test settings fixture."""
    return TestSettings()


@pytest.fixture(scope="session")
def fixtures_dir() -> Path:
    """Directory holding the fixture page modules."""
    return FIXTURES_DIR


@pytest.fixture(scope="module")
def gateway() -> Generator[SSRGateway, None, None]:
    """Gateway over the fixture page modules, shared per test module."""
    instance = new_with_options({"source_dir": FIXTURES_DIR, "pool_size": 2, "render_timeout": 5.0})
    yield instance
    instance.close()


@pytest.fixture
def fast_timeout_gateway() -> Generator[SSRGateway, None, None]:
    """Gateway with a short render deadline."""
    instance = new_with_options({"source_dir": FIXTURES_DIR, "pool_size": 1, "render_timeout": 0.5})
    yield instance
    instance.close()


@pytest.fixture
def fixture_loader() -> ModuleLoader:
    """Module loader over the fixture page modules."""
    return ModuleLoader(FIXTURES_DIR)


@pytest.fixture
def site_dir(tmp_path: Path) -> Path:
    """Empty source directory for tests that write modules."""
    root = tmp_path / "site"
    root.mkdir()
    return root


@pytest.fixture
def write_module(site_dir: Path) -> Callable[[str, str], Path]:
    """Write a page module under ``site_dir``, bumping its mtime on rewrite."""

    def _write(relative_path: str, source: str) -> Path:
        path = site_dir / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        existed = path.exists()
        previous = path.stat().st_mtime_ns if existed else 0
        path.write_text(textwrap.dedent(source).lstrip(), encoding="utf-8")
        if existed:
            # Coarse filesystem timestamps would hide a same-size rewrite
            bumped = max(previous + 1_000_000_000, time.time_ns())
            os.utime(path, ns=(bumped, bumped))
        return path

    return _write


@pytest.fixture
def site_gateway(site_dir: Path) -> Generator[SSRGateway, None, None]:
    """Gateway over ``site_dir``."""
    instance = new_with_options({"source_dir": site_dir, "pool_size": 1})
    yield instance
    instance.close()


@pytest.fixture
def api_client(test_settings: TestSettings) -> Generator[TestClient, None, None]:
    """FastAPI test client."""
    with TestClient(create_app(test_settings)) as client:
        yield client


# Pytest configuration
def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on file paths."""
    for item in items:
        path = str(item.fspath)
        if "unit" in path:
            item.add_marker(pytest.mark.unit)
        elif "integration" in path:
            item.add_marker(pytest.mark.integration)
        if "test_api" in path:
            item.add_marker(pytest.mark.api)
