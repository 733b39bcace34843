"""
Sandbox Isolation Guards
========================

Keeps one render from leaving state behind for the next render served by
the same sandbox context.

- ``ReadOnlyModule`` wraps modules handed to page code by ``import`` so
  their attributes cannot be rebound or deleted.
- ``SharedState`` records the process-wide objects page code can reach
  (allow-listed modules, their classes and functions, the runtime itself)
  and reports whether a render changed them. A context whose shared state
  changed is retired instead of being reused.
"""

from typing import Any, Dict, Iterable, List, Tuple
import importlib
import sys
import types

# Runtime modules whose globals page code can reach through injected names
RUNTIME_MODULE_PREFIXES = (
    "builtins",
    "ssr_gateway.core.errors",
    "ssr_gateway.core.rendering",
    "ssr_gateway.core.sandbox",
)


class ReadOnlyModule:
    """Attribute view of a module that refuses assignment and deletion."""

    __slots__ = ("_module",)

    def __init__(self, module: types.ModuleType) -> None:
        object.__setattr__(self, "_module", module)

    def __getattr__(self, name: str) -> Any:
        if name == "__dict__":
            raise AttributeError(f"module '{self._module.__name__}' does not expose __dict__")
        value = getattr(self._module, name)
        if isinstance(value, types.ModuleType):
            return ReadOnlyModule(value)
        return value

    def __setattr__(self, name: str, value: Any) -> None:
        raise TypeError(f"module '{self._module.__name__}' is read-only in page modules")

    def __delattr__(self, name: str) -> None:
        raise TypeError(f"module '{self._module.__name__}' is read-only in page modules")

    def __dir__(self) -> List[str]:
        return dir(self._module)

    def __repr__(self) -> str:
        return f"<read-only module '{self._module.__name__}'>"


def _is_public_module_name(name: str) -> bool:
    return not any(part.startswith("_") for part in name.split("."))


def _signature(obj: Any) -> Any:
    if isinstance(obj, dict):
        return tuple((id(key), id(value)) for key, value in obj.items())
    if isinstance(obj, (list, set)):
        return tuple(id(item) for item in obj)
    return {name: id(value) for name, value in vars(obj).items()}


class SharedState:
    """Identity snapshot of objects shared by every render in a process."""

    def __init__(self, objects: Iterable[Any]) -> None:
        self._entries: Dict[int, Tuple[Any, Any]] = {}
        for obj in objects:
            self._track(obj)
            if isinstance(obj, types.ModuleType):
                for name, value in list(vars(obj).items()):
                    if isinstance(value, (type, types.FunctionType)):
                        self._track(value)
                    elif isinstance(value, (dict, list, set)) and not name.startswith("_"):
                        self._track(value)

    def _track(self, obj: Any) -> None:
        if id(obj) not in self._entries:
            self._entries[id(obj)] = (obj, _signature(obj))

    @classmethod
    def for_imports(cls, allowed_imports: Iterable[str]) -> "SharedState":
        """Snapshot the allow-listed modules and the sandbox runtime."""
        allowed = set(allowed_imports)
        for name in allowed:
            if name not in sys.modules:
                try:
                    importlib.import_module(name)
                except ImportError:
                    # Reported to the page when it imports the module
                    continue

        modules = [
            module
            for name, module in list(sys.modules.items())
            if isinstance(module, types.ModuleType)
            and (
                (name.split(".")[0] in allowed and _is_public_module_name(name))
                or name.startswith(RUNTIME_MODULE_PREFIXES)
            )
        ]
        return cls(modules)

    def changed(self) -> bool:
        """Whether any tracked object was modified since the snapshot."""
        for obj, before in self._entries.values():
            after = _signature(obj)
            if isinstance(before, dict):
                if before.keys() - after.keys():
                    return True
                for name, value_id in after.items():
                    if name not in before:
                        # Importing a submodule binds it on its parent package
                        if not isinstance(vars(obj)[name], types.ModuleType):
                            return True
                    elif before[name] != value_id:
                        return True
            elif before != after:
                return True
        return False
