"""
Property Validation
===================

Validate and freeze the property bag passed to a render call. Only the closed
value set (str, int, float, bool, None, sequences and string-keyed mappings)
may cross into the sandbox; anything else is rejected with the offending key
path instead of being coerced.
"""

from typing import Any, Dict, List, Mapping, Set
import math

from ssr_gateway.core.errors import UnsupportedPropertyError

MAX_PROP_DEPTH = 200


def validate_props(props: Any, sort_keys: bool = True) -> Dict[str, Any]:
    """
    Validate a props mapping and return a plain, detached copy.

    Args:
        props: Mapping of property names to values (``None`` means empty)
        sort_keys: Key-sort mappings so deeply-equal inputs serialize identically

    Returns:
        Plain dict/list structure safe to send to a sandbox context

    Raises:
        UnsupportedPropertyError: If any value is outside the supported set
    """
    if props is None:
        return {}
    if not isinstance(props, Mapping):
        raise UnsupportedPropertyError("props", f"expected a mapping, got {type(props).__name__}")
    return _freeze(props, "props", sort_keys, set(), 0)


def _child_path(path: str, key: str) -> str:
    return f"{path}.{key}" if key.isidentifier() else f"{path}[{key!r}]"


def _freeze(value: Any, path: str, sort_keys: bool, active: Set[int], depth: int) -> Any:
    if depth > MAX_PROP_DEPTH:
        raise UnsupportedPropertyError(path, f"nesting deeper than {MAX_PROP_DEPTH} levels")

    value_type = type(value)
    if value is None or value_type in (str, bool, int):
        return value
    if value_type is float:
        if not math.isfinite(value):
            raise UnsupportedPropertyError(path, f"non-finite number {value!r}")
        return value

    if isinstance(value, Mapping):
        marker = id(value)
        if marker in active:
            raise UnsupportedPropertyError(path, "cyclic reference")
        active.add(marker)
        try:
            items = list(value.items())
            for key, _ in items:
                if type(key) is not str:
                    raise UnsupportedPropertyError(
                        f"{path}[{key!r}]", f"mapping keys must be strings, got {type(key).__name__}"
                    )
            if sort_keys:
                items.sort(key=lambda item: item[0])
            return {
                key: _freeze(item, _child_path(path, key), sort_keys, active, depth + 1)
                for key, item in items
            }
        finally:
            active.discard(marker)

    if isinstance(value, (list, tuple)):
        marker = id(value)
        if marker in active:
            raise UnsupportedPropertyError(path, "cyclic reference")
        active.add(marker)
        try:
            frozen: List[Any] = [
                _freeze(item, f"{path}[{index}]", sort_keys, active, depth + 1)
                for index, item in enumerate(value)
            ]
            return frozen
        finally:
            active.discard(marker)

    if callable(value):
        raise UnsupportedPropertyError(path, "functions cannot be passed as props")
    raise UnsupportedPropertyError(path, f"unsupported value of type {value_type.__name__}")
