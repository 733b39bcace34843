"""
HTML Serializer
===============

Convert element trees into HTML markup.
Handles attribute escaping, boolean attributes, inline style mappings,
void elements, fragments and raw inner HTML.
"""

import math
import re
from typing import Any, List, Mapping, Optional, Union

from markupsafe import escape

from ssr_gateway.core.errors import RenderRuntimeError
from ssr_gateway.core.rendering.elements import Element, Fragment, Node, Text


# Elements that never have content or a closing tag
VOID_ELEMENTS = frozenset(
    {
        "area",
        "base",
        "br",
        "col",
        "embed",
        "hr",
        "img",
        "input",
        "link",
        "meta",
        "param",
        "source",
        "track",
        "wbr",
    }
)

# JSX-style attribute names mapped to their HTML spelling
ATTRIBUTE_ALIASES = {
    "className": "class",
    "class_name": "class",
    "htmlFor": "for",
    "html_for": "for",
    "charSet": "charset",
    "httpEquiv": "http-equiv",
    "http_equiv": "http-equiv",
    "acceptCharset": "accept-charset",
    "tabIndex": "tabindex",
    "readOnly": "readonly",
    "maxLength": "maxlength",
    "autoFocus": "autofocus",
    "autoComplete": "autocomplete",
    "crossOrigin": "crossorigin",
    "colSpan": "colspan",
    "rowSpan": "rowspan",
    "contentEditable": "contenteditable",
    "spellCheck": "spellcheck",
}

# Style properties rendered without a px suffix
UNITLESS_STYLE_PROPERTIES = frozenset(
    {
        "columnCount",
        "fillOpacity",
        "flex",
        "flexGrow",
        "flexShrink",
        "fontWeight",
        "lineHeight",
        "opacity",
        "order",
        "orphans",
        "strokeOpacity",
        "tabSize",
        "widows",
        "zIndex",
        "zoom",
    }
)

_TAG_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9:-]*$")
_ATTRIBUTE_NAME = re.compile(r"^[^\s\"'<>/=\x00-\x1f\x7f]+$")
_UPPERCASE = re.compile(r"([A-Z])")


class _EndTag:
    """Pending closing tag on the serializer stack."""

    __slots__ = ("markup",)

    def __init__(self, tag: str) -> None:
        self.markup = f"</{tag}>"


def escape_text(value: str) -> str:
    """Escape text content (&, <, >, \", ')."""
    return str(escape(value))


def format_number(value: Union[int, float]) -> str:
    """Format numbers the way a browser prints them."""
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Non-finite number {value!r}")
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def style_to_css(style: Mapping[str, Any]) -> str:
    """Convert a style mapping into a CSS declaration string."""
    css_rules: List[str] = []

    for prop, value in style.items():
        if value is None or value is False or value == "":
            continue
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ValueError(f"Unsupported style value for '{prop}': {type(value).__name__}")

        name = prop if prop.startswith("--") else _UPPERCASE.sub(r"-\1", prop).lower()
        if isinstance(value, str):
            css_rules.append(f"{name}: {value}")
        elif value != 0 and prop not in UNITLESS_STYLE_PROPERTIES and not prop.startswith("--"):
            css_rules.append(f"{name}: {format_number(value)}px")
        else:
            css_rules.append(f"{name}: {format_number(value)}")

    return "; ".join(css_rules)


class HTMLSerializer:
    """Depth-first, pre-order serializer for element trees."""

    def __init__(self, doctype: bool = True) -> None:
        self.doctype = doctype

    def serialize(self, tree: Node, module_id: Optional[str] = None) -> str:
        """
        Serialize an element tree to HTML.

        Args:
            tree: Root node returned by a page module
            module_id: Module the tree came from, used in error messages

        Returns:
            HTML string

        Raises:
            RenderRuntimeError: If the tree contains an unknown node kind,
                an invalid tag or attribute name, or an unsupported value
        """
        parts: List[str] = []
        if self.doctype and isinstance(tree, Element) and tree.tag.lower() == "html":
            parts.append("<!DOCTYPE html>")

        stack: List[Any] = [tree]
        while stack:
            item = stack.pop()

            if isinstance(item, _EndTag):
                parts.append(item.markup)
            elif isinstance(item, Text):
                parts.append(escape_text(item.value))
            elif isinstance(item, Element):
                self._open_element(item, parts, stack, module_id)
            elif isinstance(item, Fragment):
                stack.extend(reversed(item.children))
            else:
                raise RenderRuntimeError(
                    module_id, f"Unknown node kind in element tree: {type(item).__name__}"
                )

        return "".join(parts)

    def _open_element(
        self, element: Element, parts: List[str], stack: List[Any], module_id: Optional[str]
    ) -> None:
        """Emit the opening tag and schedule children plus the closing tag."""
        tag = element.tag
        if not isinstance(tag, str) or not _TAG_NAME.match(tag):
            raise RenderRuntimeError(module_id, f"Invalid tag name: {tag!r}")

        parts.append(f"<{tag}{self._build_attributes(element.attributes, tag, module_id)}>")

        if tag.lower() in VOID_ELEMENTS:
            if element.children or element.inner_html is not None:
                raise RenderRuntimeError(
                    module_id, f"<{tag}> is a void element and cannot have children"
                )
            return

        if element.inner_html is not None:
            if element.children:
                raise RenderRuntimeError(
                    module_id, f"<{tag}> cannot have both children and raw inner HTML"
                )
            parts.append(element.inner_html)
            parts.append(f"</{tag}>")
            return

        stack.append(_EndTag(tag))
        stack.extend(reversed(element.children))

    def _build_attributes(
        self, attributes: Mapping[str, Any], tag: str, module_id: Optional[str]
    ) -> str:
        """Build HTML attributes string."""
        if not attributes:
            return ""

        attr_pairs: List[str] = []
        for key, value in attributes.items():
            if not isinstance(key, str) or not _ATTRIBUTE_NAME.match(key):
                raise RenderRuntimeError(module_id, f"Invalid attribute name on <{tag}>: {key!r}")

            name = ATTRIBUTE_ALIASES.get(key, key)
            if value is None or value is False:
                continue
            if value is True:
                attr_pairs.append(name)
                continue

            try:
                text = self._attribute_text(name, value)
            except ValueError as e:
                raise RenderRuntimeError(module_id, f"Attribute '{key}' on <{tag}>: {e}") from None

            if text is not None:
                attr_pairs.append(f'{name}="{escape_text(text)}"')

        return " " + " ".join(attr_pairs) if attr_pairs else ""

    def _attribute_text(self, name: str, value: Any) -> Optional[str]:
        """Convert an attribute value to its unescaped text form."""
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float)):
            return format_number(value)
        if name == "style" and isinstance(value, Mapping):
            css = style_to_css(value)
            return css or None
        if name == "class" and isinstance(value, (list, tuple)):
            classes = [item for item in value if item]
            if not all(isinstance(item, str) for item in classes):
                raise ValueError("class lists may only contain strings")
            return " ".join(classes) or None
        raise ValueError(f"unsupported value type {type(value).__name__}")


def serialize_tree(tree: Node, doctype: bool = True, module_id: Optional[str] = None) -> str:
    """
    Serialize an element tree to HTML.

    Args:
        tree: Root node
        doctype: Prefix <!DOCTYPE html> when the root element is <html>
        module_id: Module the tree came from, used in error messages

    Returns:
        HTML string
    """
    return HTMLSerializer(doctype=doctype).serialize(tree, module_id)
