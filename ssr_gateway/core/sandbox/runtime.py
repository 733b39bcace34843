"""
Sandbox Runtime
===============

Everything a page module sees while it executes inside a sandbox context:
the ``h`` element factory, the ``Fragment`` marker, ``require`` for linked
dependencies, read-only props and a reduced builtins table.

Each render builds a fresh ``ModuleRegistry`` with its own namespaces,
``h``, ``Fragment`` and ``require``, so module-level state never leaks from
one render to the next. Imported modules are handed out read-only.
"""

from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Tuple
import builtins
import collections.abc
import marshal

from ssr_gateway.core.rendering.elements import NODE_TYPES, Element, Node, Text
from ssr_gateway.core.rendering.elements import Fragment as FragmentNode
from ssr_gateway.core.rendering.html_serializer import format_number
from ssr_gateway.core.sandbox.isolation import ReadOnlyModule


# Builtins removed from page module globals
BLOCKED_BUILTINS = frozenset(
    {
        "breakpoint",
        "compile",
        "copyright",
        "credits",
        "eval",
        "exec",
        "exit",
        "globals",
        "help",
        "input",
        "license",
        "locals",
        "memoryview",
        "open",
        "quit",
        "vars",
        "__loader__",
        "__spec__",
    }
)

INJECTED_NAMES = frozenset({"h", "Fragment", "require"})

INNER_HTML_KEYS = ("dangerouslySetInnerHTML", "dangerously_set_inner_html")
IGNORED_PROPS = frozenset({"key", "ref"})


class Props(collections.abc.Mapping):
    """Read-only mapping with attribute access, handed to render functions."""

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping[str, Any]] = None) -> None:
        object.__setattr__(self, "_data", dict(data or {}))

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __getattr__(self, name: str) -> Any:
        try:
            return self._data[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setattr__(self, name: str, value: Any) -> None:
        raise TypeError(f"{type(self).__name__} is read-only")

    def __delattr__(self, name: str) -> None:
        raise TypeError(f"{type(self).__name__} is read-only")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._data!r})"


class ModuleExports(Props):
    """Public names of a required module."""


def to_sandbox(value: Any) -> Any:
    """Convert validated plain props into their read-only sandbox form."""
    if isinstance(value, dict):
        return Props({key: to_sandbox(item) for key, item in value.items()})
    if isinstance(value, list):
        return tuple(to_sandbox(item) for item in value)
    return value


def to_plain(value: Any) -> Any:
    """Convert sandbox mappings and sequences back to picklable plain data."""
    if isinstance(value, Mapping):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    return value


def _is_child_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple, Iterator))


def normalize_children(children: Iterable[Any]) -> Tuple[Node, ...]:
    """Flatten nested child sequences and convert leaves to nodes."""
    nodes: List[Node] = []
    stack: List[Iterator[Any]] = [iter(children)]

    while stack:
        try:
            child = next(stack[-1])
        except StopIteration:
            stack.pop()
            continue

        if child is None or isinstance(child, bool):
            continue
        if isinstance(child, str):
            nodes.append(Text(child))
        elif isinstance(child, (int, float)):
            nodes.append(Text(format_number(child)))
        elif isinstance(child, NODE_TYPES):
            nodes.append(child)
        elif _is_child_sequence(child):
            stack.append(iter(child))
        else:
            raise TypeError(f"Objects of type {type(child).__name__} are not valid as a child")

    return tuple(nodes)


def to_node(value: Any) -> Node:
    """Normalize a render or component return value into a single node."""
    if value is None or isinstance(value, bool):
        return FragmentNode(())
    if isinstance(value, str):
        return Text(value)
    if isinstance(value, (int, float)):
        return Text(format_number(value))
    if isinstance(value, NODE_TYPES):
        return value
    if _is_child_sequence(value):
        return FragmentNode(normalize_children(value))
    raise TypeError(f"Unsupported node kind returned from render: {type(value).__name__}")


def create_node(fragment: Any, tag: Any, props: Any = None, *children: Any) -> Node:
    """
    Create an element tree node.

    Args:
        fragment: Marker that stands for a tag-less fragment
        tag: HTML tag name, ``fragment``, or a component function
        props: Attribute mapping; a non-mapping value is treated as the first child
        *children: Child nodes, strings, numbers or nested sequences

    Returns:
        Element tree node. Component functions are called immediately.
    """
    if props is not None and not isinstance(props, Mapping):
        children = (props,) + children
        props = None

    attributes: Dict[str, Any] = dict(props) if props else {}
    if children:
        attributes.pop("children", None)
        child_values: Any = children
    else:
        child_values = attributes.pop("children", ())
        if not _is_child_sequence(child_values):
            child_values = (child_values,)

    if tag is fragment:
        return FragmentNode(normalize_children(child_values))

    if isinstance(tag, str):
        return _create_element(tag, attributes, child_values)

    if callable(tag):
        if children or child_values:
            attributes["children"] = tuple(child_values)
        return to_node(tag(Props(attributes)))

    raise TypeError(f"Invalid element type: {tag!r}")


def _create_element(tag: str, props: Dict[str, Any], children: Iterable[Any]) -> Element:
    attributes: Dict[str, Any] = {}
    inner_html: Optional[str] = None

    for key, value in props.items():
        if key in IGNORED_PROPS:
            continue
        if key in INNER_HTML_KEYS:
            if isinstance(value, Mapping) and "__html" in value:
                value = value["__html"]
            if not isinstance(value, str):
                raise TypeError(f"'{key}' on <{tag}> must be a string or {{'__html': str}}")
            inner_html = value
            continue
        if callable(value):
            # Event handlers only exist client-side
            if key.startswith("on"):
                continue
            raise TypeError(f"Attribute '{key}' on <{tag}> cannot be a function")
        attributes[key] = to_plain(value)

    return Element(
        tag=tag,
        attributes=attributes,
        children=normalize_children(children),
        inner_html=inner_html,
    )


def make_element_factory() -> Tuple[Callable[..., Node], Any]:
    """
    Build the ``h`` function and ``Fragment`` marker for one render.

    Both are created per render so attributes a page sets on them are gone
    by the next render.

    Returns:
        ``(h, Fragment)`` pair
    """
    marker_type = type("Fragment", (), {"__slots__": (), "__repr__": lambda self: "Fragment"})
    fragment = marker_type()

    def h(tag: Any, props: Any = None, *children: Any) -> Node:
        return create_node(fragment, tag, props, *children)

    return h, fragment


def _guarded_import(allowed: FrozenSet[str]) -> Callable[..., Any]:
    real_import = builtins.__import__

    def guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
        if level != 0:
            raise ImportError("relative imports are not available to page modules; use require()")
        if name.split(".")[0] not in allowed:
            raise ImportError(f"import of '{name}' is not allowed in page modules")
        return ReadOnlyModule(real_import(name, globals, locals, fromlist, level))

    return guarded_import


def make_builtins(allowed_imports: Iterable[str]) -> Dict[str, Any]:
    """Builtins table for page modules with an import allowlist."""
    table = {
        name: value for name, value in vars(builtins).items() if name not in BLOCKED_BUILTINS
    }
    table["__import__"] = _guarded_import(frozenset(allowed_imports))
    return table


class ModuleRegistry:
    """Per-render module instances; each module body runs at most once."""

    def __init__(
        self,
        modules: Mapping[str, bytes],
        links: Mapping[str, Mapping[str, str]],
        allowed_imports: Iterable[str] = (),
    ) -> None:
        self._modules = modules
        self._links = links
        self._builtins = make_builtins(allowed_imports)
        self.h, self.fragment = make_element_factory()
        self._namespaces: Dict[str, Dict[str, Any]] = {}
        self._loading: List[str] = []

    def execute(self, module_id: str) -> Dict[str, Any]:
        """Run a module body (once) and return its global namespace."""
        namespace = self._namespaces.get(module_id)
        if namespace is not None:
            return namespace

        if module_id in self._loading:
            chain = " -> ".join(self._loading[self._loading.index(module_id):] + [module_id])
            raise ImportError(f"circular require: {chain}")
        if module_id not in self._modules:
            raise ImportError(f"module '{module_id}' is not part of this render")

        namespace = {
            "__builtins__": dict(self._builtins),
            "__name__": module_id,
            "__file__": module_id,
            "h": self.h,
            "Fragment": self.fragment,
            "require": self._require_for(module_id),
        }
        code = marshal.loads(self._modules[module_id])

        self._loading.append(module_id)
        try:
            exec(code, namespace)
        finally:
            self._loading.pop()

        self._namespaces[module_id] = namespace
        return namespace

    def exports(self, module_id: str) -> ModuleExports:
        """Public names bound by a module after it runs."""
        namespace = self.execute(module_id)
        names = namespace.get("__all__")
        if names is None:
            names = [
                name
                for name in namespace
                if not name.startswith("_") and name not in INJECTED_NAMES
            ]
        return ModuleExports({name: namespace[name] for name in names})

    def _require_for(self, module_id: str) -> Callable[[str], ModuleExports]:
        links = self._links.get(module_id, {})

        def require(specifier: str) -> ModuleExports:
            target = links.get(specifier)
            if target is None:
                raise ImportError(f"require('{specifier}') was not linked when {module_id} was compiled")
            return self.exports(target)

        return require
