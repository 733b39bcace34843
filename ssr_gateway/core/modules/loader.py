"""
Module Loader
=============

Resolve page module paths under the configured source directory, compile them
to code objects and cache the result keyed by absolute path. Cache entries are
validated against a fingerprint of the source file on every lookup, so edits
are picked up without restarting the process.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple
import ast
import hashlib
import marshal
import os
import threading
import time

from ssr_gateway.config.logging import get_logger
from ssr_gateway.core.errors import CompileError, PageModuleNotFoundError
from ssr_gateway.models.schemas import CacheStats, FingerprintStrategy

logger = get_logger(__name__)

REQUIRE_FUNCTION = "require"
DEFAULT_EXPORT = "default"


@dataclass(frozen=True)
class Fingerprint:
    """Identity of a source file's content at load time."""

    size: int
    mtime_ns: int = 0
    digest: Optional[str] = None


@dataclass(frozen=True)
class CompiledModule:
    """Cache entry for one compiled page module."""

    module_id: str
    path: Path
    code: bytes
    fingerprint: Fingerprint
    links: Dict[str, str] = field(default_factory=dict)
    entry_name: Optional[str] = None
    compiled_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ModuleBundle:
    """A page module plus everything it requires, ready for execution."""

    entry_module: str
    entry: str
    modules: Dict[str, bytes]
    links: Dict[str, Dict[str, str]]


class _RequireCollector(ast.NodeVisitor):
    """Collect require("...") specifiers from a module AST."""

    def __init__(self) -> None:
        self.specifiers: List[Tuple[str, int]] = []
        self.invalid: List[ast.Call] = []

    def visit_Call(self, node: ast.Call) -> None:
        if isinstance(node.func, ast.Name) and node.func.id == REQUIRE_FUNCTION:
            if (
                len(node.args) == 1
                and not node.keywords
                and isinstance(node.args[0], ast.Constant)
                and isinstance(node.args[0].value, str)
            ):
                specifier = node.args[0].value
                if specifier not in (s for s, _ in self.specifiers):
                    self.specifiers.append((specifier, node.lineno))
            else:
                self.invalid.append(node)
        self.generic_visit(node)


def _top_level_bindings(tree: ast.Module) -> Dict[str, ast.stmt]:
    """Map names bound at module level to the statement binding them."""
    bindings: Dict[str, ast.stmt] = {}

    for stmt in tree.body:
        if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            bindings[stmt.name] = stmt
        elif isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                if isinstance(target, ast.Name):
                    bindings[target.id] = stmt
        elif isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
            bindings[stmt.target.id] = stmt
        elif isinstance(stmt, (ast.Import, ast.ImportFrom)):
            for alias in stmt.names:
                bindings[(alias.asname or alias.name).split(".")[0]] = stmt

    return bindings


class ModuleLoader:
    """Resolves, compiles and caches page modules under a source directory."""

    def __init__(
        self,
        source_dir: Path,
        extensions: Tuple[str, ...] = (".py",),
        fingerprint: FingerprintStrategy = FingerprintStrategy.MTIME,
        entry_point: str = "render",
    ) -> None:
        self.source_root = Path(source_dir).resolve()
        self.extensions = tuple(extensions)
        self.fingerprint_strategy = FingerprintStrategy(fingerprint)
        self.entry_point = entry_point
        self.logger: Any = logger.bind(component="module_loader")  # structlog.BoundLoggerBase

        # Entries are replaced wholesale; lookups never take a lock
        self._cache: Dict[str, CompiledModule] = {}
        self._path_locks: Dict[str, threading.Lock] = {}
        self._path_locks_guard = threading.Lock()

        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._compilations = 0
        self._invalidations = 0

    # Resolution

    def resolve(self, specifier: str, base_dir: Optional[Path] = None) -> Path:
        """
        Resolve a module path to an absolute file inside the source directory.

        Args:
            specifier: Path relative to ``base_dir`` (or the source directory)
            base_dir: Directory of the requiring module, if any

        Returns:
            Resolved absolute path of the module file

        Raises:
            PageModuleNotFoundError: If the path is empty, absolute, escapes
                the source directory, or does not name an existing module
        """
        if not isinstance(specifier, str) or not specifier.strip():
            raise PageModuleNotFoundError(repr(specifier), "empty module path")
        if "\x00" in specifier:
            raise PageModuleNotFoundError(repr(specifier), "path contains a NUL byte")

        candidate = Path(specifier)
        if candidate.is_absolute():
            raise PageModuleNotFoundError(specifier, "absolute paths are not allowed")

        target = Path(os.path.normpath((base_dir or self.source_root) / candidate))
        if not self._within_root(target):
            raise PageModuleNotFoundError(specifier, "path escapes the source directory")

        for option in self._candidates(target):
            if not self._within_root(option) or not option.is_file():
                continue
            resolved = option.resolve()
            if not self._within_root(resolved):
                raise PageModuleNotFoundError(specifier, "path escapes the source directory")
            return resolved

        raise PageModuleNotFoundError(specifier)

    def module_id_for(self, path: Path) -> str:
        """Module identifier (POSIX path relative to the source directory)."""
        return path.relative_to(self.source_root).as_posix()

    def _within_root(self, path: Path) -> bool:
        return path == self.source_root or self.source_root in path.parents

    def _candidates(self, target: Path) -> Iterator[Path]:
        if target.suffix in self.extensions:
            yield target
        for ext in self.extensions:
            yield target.with_name(target.name + ext)
        for ext in self.extensions:
            yield target / f"index{ext}"

    # Loading

    def load(self, page_path: str) -> ModuleBundle:
        """
        Load a page module and its transitive requirements.

        Args:
            page_path: Page path relative to the source directory

        Returns:
            ModuleBundle containing code for every module the page needs

        Raises:
            PageModuleNotFoundError: If the page does not resolve
            CompileError: If the page or a dependency fails to compile
        """
        root = self.get_module(self.resolve(page_path))
        if root.entry_name is None:
            raise CompileError(
                root.module_id, f"module does not define a '{self.entry_point}' entry point"
            )

        modules: Dict[str, bytes] = {}
        links: Dict[str, Dict[str, str]] = {}
        pending = [root]
        while pending:
            module = pending.pop()
            if module.module_id in modules:
                continue
            modules[module.module_id] = module.code
            links[module.module_id] = dict(module.links)

            for specifier, dependency_id in module.links.items():
                if dependency_id in modules:
                    continue
                try:
                    pending.append(self.get_module(self.source_root / dependency_id))
                except PageModuleNotFoundError:
                    raise CompileError(
                        module.module_id, f"required module '{specifier}' no longer exists"
                    ) from None

        return ModuleBundle(
            entry_module=root.module_id,
            entry=root.entry_name,
            modules=modules,
            links=links,
        )

    def get_module(self, path: Path) -> CompiledModule:
        """
        Return the compiled module for an already-resolved path.

        A cached entry is reused only while its fingerprint matches the file.
        Concurrent first loads of the same path compile once; unrelated paths
        never wait on each other.
        """
        key = str(path)
        module_id = self.module_id_for(path)

        fingerprint, source = self._fingerprint(path, module_id)
        entry = self._cache.get(key)
        if entry is not None and entry.fingerprint == fingerprint:
            self._count(hits=1)
            return entry

        with self._lock_for(key):
            entry = self._cache.get(key)
            if entry is not None and entry.fingerprint == fingerprint:
                self._count(hits=1)
                return entry

            self._count(misses=1)
            if source is None:
                source = self._read(path, module_id)
            compiled = self._compile(path, module_id, fingerprint, source)

            self._cache[key] = compiled
            self._count(compilations=1, invalidations=1 if entry is not None else 0)

        if entry is not None:
            self.logger.info("Recompiled changed page module", module=module_id)
        return compiled

    def _lock_for(self, key: str) -> threading.Lock:
        lock = self._path_locks.get(key)
        if lock is None:
            with self._path_locks_guard:
                lock = self._path_locks.setdefault(key, threading.Lock())
        return lock

    def _fingerprint(self, path: Path, module_id: str) -> Tuple[Fingerprint, Optional[bytes]]:
        """Compute the file fingerprint; hash strategy also returns the bytes read."""
        if self.fingerprint_strategy is FingerprintStrategy.HASH:
            source = self._read(path, module_id)
            digest = hashlib.sha256(source).hexdigest()
            return Fingerprint(size=len(source), digest=digest), source

        try:
            stat = path.stat()
        except FileNotFoundError:
            raise PageModuleNotFoundError(module_id, "module file disappeared") from None
        except OSError as e:
            raise CompileError(module_id, f"unable to stat module: {e.strerror or e}") from None
        return Fingerprint(size=stat.st_size, mtime_ns=stat.st_mtime_ns), None

    def _read(self, path: Path, module_id: str) -> bytes:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise PageModuleNotFoundError(module_id, "module file disappeared") from None
        except OSError as e:
            raise CompileError(module_id, f"unable to read module: {e.strerror or e}") from None

    # Compilation

    def _compile(
        self, path: Path, module_id: str, fingerprint: Fingerprint, source_bytes: bytes
    ) -> CompiledModule:
        """Parse, link and compile one module. Failures are raised, never cached."""
        start_time = time.perf_counter()

        try:
            source = source_bytes.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise CompileError(module_id, f"source is not valid UTF-8: {e.reason}") from None

        try:
            tree = ast.parse(source, filename=module_id)
        except SyntaxError as e:
            self.logger.warning("Page module failed to parse", module=module_id, error=e.msg)
            raise CompileError(module_id, e.msg, e.lineno, e.offset) from None
        except ValueError as e:
            raise CompileError(module_id, str(e)) from None

        entry_name = self._find_entry_point(tree, module_id)
        links = self._link(tree, path, module_id)

        try:
            code = compile(tree, module_id, "exec", dont_inherit=True)
        except (SyntaxError, ValueError) as e:
            raise CompileError(
                module_id, getattr(e, "msg", str(e)), getattr(e, "lineno", None)
            ) from None

        self.logger.info(
            "Compiled page module",
            module=module_id,
            dependencies=len(links),
            compile_time=round(time.perf_counter() - start_time, 6),
        )

        return CompiledModule(
            module_id=module_id,
            path=path,
            code=marshal.dumps(code),
            fingerprint=fingerprint,
            links=links,
            entry_name=entry_name,
        )

    def _find_entry_point(self, tree: ast.Module, module_id: str) -> Optional[str]:
        """Name of the top-level render entry point, if the module binds one.

        Modules loaded only through require() need no entry point.
        """
        bindings = _top_level_bindings(tree)
        for name in (self.entry_point, DEFAULT_EXPORT):
            stmt = bindings.get(name)
            if stmt is None:
                continue
            if isinstance(stmt, ast.AsyncFunctionDef):
                raise CompileError(
                    module_id, f"entry point '{name}' must be a regular function, not async", stmt.lineno
                )
            return name
        return None

    def _link(self, tree: ast.Module, path: Path, module_id: str) -> Dict[str, str]:
        """Resolve require() specifiers relative to the module's directory."""
        collector = _RequireCollector()
        collector.visit(tree)

        if collector.invalid:
            call = collector.invalid[0]
            raise CompileError(
                module_id,
                "require() takes exactly one string literal argument",
                call.lineno,
                call.col_offset + 1,
            )

        links: Dict[str, str] = {}
        for specifier, lineno in collector.specifiers:
            try:
                dependency = self.resolve(specifier, base_dir=path.parent)
            except PageModuleNotFoundError as e:
                raise CompileError(
                    module_id, f"cannot resolve require('{specifier}'): {e.reason}", lineno
                ) from None
            links[specifier] = self.module_id_for(dependency)
        return links

    # Cache management

    def invalidate(self, page_path: Optional[str] = None) -> int:
        """
        Drop cached modules.

        Args:
            page_path: Page to drop; ``None`` clears the whole cache

        Returns:
            Number of entries removed
        """
        if page_path is None:
            removed = len(self._cache)
            self._cache = {}
        else:
            try:
                key = str(self.resolve(page_path))
            except PageModuleNotFoundError:
                return 0
            removed = 1 if self._cache.pop(key, None) is not None else 0

        self._count(invalidations=removed)
        self.logger.debug("Module cache invalidated", page=page_path, removed=removed)
        return removed

    def cached_modules(self) -> List[str]:
        """Module ids currently held in the cache."""
        return sorted(entry.module_id for entry in list(self._cache.values()))

    def stats(self) -> CacheStats:
        """Snapshot of cache counters."""
        with self._stats_lock:
            return CacheStats(
                entries=len(self._cache),
                hits=self._hits,
                misses=self._misses,
                compilations=self._compilations,
                invalidations=self._invalidations,
            )

    def _count(
        self, hits: int = 0, misses: int = 0, compilations: int = 0, invalidations: int = 0
    ) -> None:
        with self._stats_lock:
            self._hits += hits
            self._misses += misses
            self._compilations += compilations
            self._invalidations += invalidations
