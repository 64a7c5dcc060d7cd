from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Iterator, Mapping

from .errors import EpubFormatError

_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>")


def _split_tag(tag: str) -> tuple[str | None, str]:
    if tag.startswith("{") and "}" in tag:
        namespace, local = tag[1:].split("}", 1)
        return namespace, local
    if ":" in tag:
        prefix, local = tag.split(":", 1)
        return prefix, local
    return None, tag


@dataclass
class XmlNode:
    """Decoded XML element addressed by local tag names.

    Namespaces are kept on ``namespace`` but ignored for lookups, so a
    ``<package>`` and an ``<opf:package>`` root are found the same way.
    """

    tag: str
    namespace: str | None = None
    attrs: dict[str, str] = field(default_factory=dict)
    text: str | None = None
    children: list["XmlNode"] = field(default_factory=list)

    def find_all(self, name: str) -> list["XmlNode"]:
        return [child for child in self.children if child.tag == name]

    def first(self, name: str) -> "XmlNode | None":
        for child in self.children:
            if child.tag == name:
                return child
        return None

    def iter(self, name: str | None = None) -> Iterator["XmlNode"]:
        if name is None or self.tag == name:
            yield self
        for child in self.children:
            yield from child.iter(name)

    def get(self, name: str, default: str | None = None) -> str | None:
        return self.attrs.get(name, default)


def _convert(elem: ET.Element) -> XmlNode:
    namespace, local = _split_tag(elem.tag)
    attrs: dict[str, str] = {}
    for key, value in elem.attrib.items():
        _, attr_local = _split_tag(key)
        # keep the first spelling when a local name repeats across namespaces
        attrs.setdefault(attr_local, value)
    children = [_convert(child) for child in elem if isinstance(child.tag, str)]
    text = "".join(elem.itertext())
    return XmlNode(
        tag=local,
        namespace=namespace,
        attrs=attrs,
        text=text,
        children=children,
    )


def decode_xml(text: str | bytes) -> XmlNode:
    """Parse an XML document into an :class:`XmlNode` tree."""
    if isinstance(text, str):
        # a str is already decoded; a stale encoding declaration would confuse expat
        text = _XML_DECLARATION.sub("", text.lstrip("\ufeff"), count=1)
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise EpubFormatError(f"Malformed XML: {exc}") from exc
    return _convert(root)


def text_of(node: object) -> str | None:
    """Return the trimmed text carried by ``node`` or ``None``.

    Accepts decoded nodes, plain strings, ``{"_": text}`` mappings and lists
    of any of those (the first element wins).
    """
    if node is None:
        return None
    if isinstance(node, (list, tuple)):
        return text_of(node[0]) if node else None
    if isinstance(node, XmlNode):
        value = node.text
    elif isinstance(node, Mapping):
        value = node.get("_")
    elif isinstance(node, str):
        value = node
    else:
        return None
    if value is None:
        return None
    value = value.strip()
    return value or None


__all__ = ["XmlNode", "decode_xml", "text_of"]
