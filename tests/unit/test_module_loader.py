"""
Unit Tests for Module Loader
============================

Tests for path resolution, compilation, dependency linking and the
fingerprint-validated module cache.
"""

import os
import threading

import pytest

from ssr_gateway.core.errors import CompileError, PageModuleNotFoundError
from ssr_gateway.core.modules.loader import ModuleLoader
from ssr_gateway.models.schemas import FingerprintStrategy


class TestResolution:
    """Test page path resolution under the source directory."""

    def test_resolves_with_extension(self, fixture_loader, fixtures_dir):
        """Test the configured extension is appended."""
        assert fixture_loader.resolve("index") == (fixtures_dir / "index.py").resolve()

    def test_resolves_exact_path(self, fixture_loader, fixtures_dir):
        """Test paths that already carry the extension resolve as given."""
        assert fixture_loader.resolve("pages/about.py") == (fixtures_dir / "pages/about.py").resolve()

    def test_resolves_directory_index(self, fixture_loader, fixtures_dir):
        """Test a directory resolves to its index module."""
        assert fixture_loader.resolve("widgets") == (fixtures_dir / "widgets/index.py").resolve()

    def test_resolves_relative_to_base(self, fixture_loader, fixtures_dir):
        """Test require-style resolution from another module's directory."""
        resolved = fixture_loader.resolve("../components/header", base_dir=fixtures_dir / "pages")
        assert resolved == (fixtures_dir / "components/header.py").resolve()

    def test_module_id(self, fixture_loader):
        """Test module ids are POSIX paths relative to the source directory."""
        assert fixture_loader.module_id_for(fixture_loader.resolve("pages/index")) == "pages/index.py"

    @pytest.mark.parametrize(
        "page_path",
        ["../conftest", "pages/../../conftest", "../../etc/passwd", "./../tests/conftest"],
    )
    def test_traversal_rejected(self, fixture_loader, page_path):
        """Test paths escaping the source directory are rejected."""
        with pytest.raises(PageModuleNotFoundError, match="escapes the source directory"):
            fixture_loader.resolve(page_path)

    def test_absolute_path_rejected(self, fixture_loader, fixtures_dir):
        """Test absolute paths are rejected even inside the source directory."""
        with pytest.raises(PageModuleNotFoundError, match="absolute"):
            fixture_loader.resolve(str(fixtures_dir / "index.py"))

    @pytest.mark.parametrize("page_path", ["", "   ", "index\x00.py"])
    def test_malformed_paths(self, fixture_loader, page_path):
        """Test empty and NUL-containing paths are rejected."""
        with pytest.raises(PageModuleNotFoundError):
            fixture_loader.resolve(page_path)

    def test_missing_module(self, fixture_loader):
        """Test missing modules raise with the page path."""
        with pytest.raises(PageModuleNotFoundError) as exc_info:
            fixture_loader.resolve("pages/missing")
        assert exc_info.value.page_path == "pages/missing"
        assert exc_info.value.reason == "module not found"

    def test_symlink_escape_rejected(self, tmp_path):
        """Test symlinks pointing outside the source directory are rejected."""
        outside = tmp_path / "outside.py"
        outside.write_text("def render(props):\n    return 'secret'\n")
        root = tmp_path / "site"
        root.mkdir()
        try:
            os.symlink(outside, root / "link.py")
        except (OSError, NotImplementedError):
            pytest.skip("symlinks not supported")

        loader = ModuleLoader(root)
        with pytest.raises(PageModuleNotFoundError, match="escapes the source directory"):
            loader.resolve("link")


class TestCompilation:
    """Test compilation and linking."""

    def test_load_bundle(self, fixture_loader):
        """Test a page bundle contains every transitive dependency."""
        bundle = fixture_loader.load("pages/index")
        assert bundle.entry_module == "pages/index.py"
        assert bundle.entry == "render"
        assert set(bundle.modules) == {
            "pages/index.py",
            "components/layout.py",
            "components/header.py",
            "widgets/index.py",
        }
        assert bundle.links["pages/index.py"] == {
            "../components/layout": "components/layout.py",
            "../widgets": "widgets/index.py",
        }
        assert bundle.links["components/layout.py"] == {"./header": "components/header.py"}

    def test_default_entry_point(self, fixture_loader):
        """Test a module may export default instead of render."""
        assert fixture_loader.load("uses_default").entry == "default"

    def test_missing_entry_point(self, fixture_loader):
        """Test pages without an entry point fail to compile."""
        with pytest.raises(CompileError, match="does not define a 'render' entry point"):
            fixture_loader.load("helpers_only")

    def test_async_entry_point(self, fixture_loader):
        """Test async render functions are rejected."""
        with pytest.raises(CompileError, match="must be a regular function"):
            fixture_loader.load("async_render")

    def test_dynamic_require(self, fixture_loader):
        """Test require() with a non-literal argument fails to compile."""
        with pytest.raises(CompileError) as exc_info:
            fixture_loader.load("dynamic_require")
        assert exc_info.value.module_id == "dynamic_require.py"
        assert "string literal" in exc_info.value.diagnostic
        assert exc_info.value.lineno == 5

    def test_require_escaping_root(self, fixture_loader):
        """Test require() paths are confined to the source directory."""
        with pytest.raises(CompileError, match="cannot resolve require"):
            fixture_loader.load("escapes_require")

    def test_syntax_error_location(self, write_module, site_dir):
        """Test syntax errors carry the module id, line and column."""
        write_module("broken.py", 'def render(props):\n    return h("p", None, "x"\n')
        loader = ModuleLoader(site_dir)
        with pytest.raises(CompileError) as exc_info:
            loader.load("broken")
        error = exc_info.value
        assert error.module_id == "broken.py"
        assert error.lineno is not None
        assert str(error).startswith(f"Failed to compile broken.py:{error.lineno}")

    def test_invalid_utf8(self, site_dir):
        """Test undecodable sources fail to compile."""
        (site_dir / "latin.py").write_bytes(b"def render(props):\n    return '\xe9'\n")
        with pytest.raises(CompileError, match="not valid UTF-8"):
            ModuleLoader(site_dir).load("latin")

    def test_other_extensions(self, write_module, site_dir):
        """Test configured extensions are tried in order."""
        write_module("page.pyx", "def render(props):\n    return 'x'\n")
        loader = ModuleLoader(site_dir, extensions=(".py", ".pyx"))
        assert loader.load("page").entry_module == "page.pyx"


class TestCache:
    """Test the module cache."""

    def test_cache_hit(self, write_module, site_dir):
        """Test unchanged modules are served from cache."""
        write_module("page.py", "def render(props):\n    return 'v1'\n")
        loader = ModuleLoader(site_dir)
        first = loader.load("page")
        second = loader.load("page")
        assert first.modules == second.modules

        stats = loader.stats()
        assert stats.compilations == 1
        assert stats.hits == 1
        assert stats.entries == 1

    def test_edit_is_picked_up(self, write_module, site_dir):
        """Test a changed fingerprint triggers recompilation."""
        write_module("page.py", "def render(props):\n    return 'v1'\n")
        loader = ModuleLoader(site_dir)
        before = loader.load("page").modules["page.py"]

        write_module("page.py", "def render(props):\n    return 'v2'\n")
        after = loader.load("page").modules["page.py"]

        assert before != after
        assert loader.stats().compilations == 2
        assert loader.stats().invalidations == 1

    def test_hash_fingerprint_ignores_touch(self, write_module, site_dir):
        """Test the hash strategy keeps entries when only the mtime changes."""
        path = write_module("page.py", "def render(props):\n    return 'v1'\n")
        loader = ModuleLoader(site_dir, fingerprint=FingerprintStrategy.HASH)
        loader.load("page")

        os.utime(path, ns=(path.stat().st_atime_ns, path.stat().st_mtime_ns + 5_000_000_000))
        loader.load("page")
        assert loader.stats().compilations == 1

    def test_dependency_edit_is_picked_up(self, write_module, site_dir):
        """Test editing a required module refreshes pages that use it."""
        write_module("page.py", 'lib = require("./lib")\n\ndef render(props):\n    return lib.VALUE\n')
        write_module("lib.py", "VALUE = 'one'\n")
        loader = ModuleLoader(site_dir)
        before = loader.load("page").modules["lib.py"]

        write_module("lib.py", "VALUE = 'two!'\n")
        after = loader.load("page").modules["lib.py"]
        assert before != after

    def test_removed_dependency(self, write_module, site_dir):
        """Test a deleted dependency is reported as a compile error of its requirer."""
        write_module("page.py", 'lib = require("./lib")\n\ndef render(props):\n    return lib.VALUE\n')
        lib = write_module("lib.py", "VALUE = 1\n")
        loader = ModuleLoader(site_dir)
        loader.load("page")

        lib.unlink()
        with pytest.raises(CompileError, match="no longer exists"):
            loader.load("page")

    def test_compile_failure_not_cached(self, write_module, site_dir):
        """Test a fixed module compiles on the next load."""
        write_module("page.py", "def render(props)\n    return 'x'\n")
        loader = ModuleLoader(site_dir)
        with pytest.raises(CompileError):
            loader.load("page")
        assert loader.stats().entries == 0

        write_module("page.py", "def render(props):\n    return 'x'\n")
        assert loader.load("page").entry_module == "page.py"

    def test_invalidate(self, fixture_loader):
        """Test single-entry and full invalidation."""
        fixture_loader.load("pages/index")
        assert "components/header.py" in fixture_loader.cached_modules()

        assert fixture_loader.invalidate("components/header") == 1
        assert "components/header.py" not in fixture_loader.cached_modules()
        assert fixture_loader.invalidate("components/header") == 0
        assert fixture_loader.invalidate("does/not/exist") == 0

        assert fixture_loader.invalidate() == 3
        assert fixture_loader.cached_modules() == []

    def test_concurrent_first_load_compiles_once(self, write_module, site_dir):
        """Test concurrent loads of one path share a single compilation."""
        write_module("page.py", "def render(props):\n    return 'x'\n")
        loader = ModuleLoader(site_dir)
        barrier = threading.Barrier(8)
        errors = []

        def worker() -> None:
            try:
                barrier.wait()
                loader.load("page")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert loader.stats().compilations == 1
