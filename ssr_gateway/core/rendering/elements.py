"""
Element Tree
============

Tagged variants produced by page modules and consumed by the HTML serializer.
Instances are plain frozen dataclasses so they pickle across the sandbox
process boundary.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union


@dataclass(frozen=True)
class Text:
    """Text leaf; escaped on output."""

    value: str


@dataclass(frozen=True)
class Element:
    """HTML element with attributes and ordered children."""

    tag: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    children: Tuple["Node", ...] = ()
    inner_html: Optional[str] = None


@dataclass(frozen=True)
class Fragment:
    """Tag-less grouping node; only its children are emitted."""

    children: Tuple["Node", ...] = ()


Node = Union[Text, Element, Fragment]

NODE_TYPES = (Text, Element, Fragment)
