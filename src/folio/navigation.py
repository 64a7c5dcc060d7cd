from __future__ import annotations

import html
import logging
import re
import warnings
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Sequence

from bs4 import BeautifulSoup, Tag, XMLParsedAsHTMLWarning

from .errors import EpubFormatError
from .xmltree import XmlNode, decode_xml, text_of

logger = logging.getLogger(__name__)

NOT_FOUND = -1
NCX_MARKER = "ncx"

_NAV_TOC_PATTERN = re.compile(
    r"<nav[^>]*epub:type\s*=\s*[\"'][^\"']*\btoc\b[^\"']*[\"'][^>]*>([\s\S]*?)</nav>",
    re.IGNORECASE,
)
_NAV_ITEM_PATTERN = re.compile(
    r"<li[^>]*>[\s\S]*?<a[^>]*href\s*=\s*\"([^\"]+)\"[^>]*>([\s\S]*?)</a>[\s\S]*?</li>",
    re.IGNORECASE,
)
_TAG_PATTERN = re.compile(r"<[^>]*>")


@dataclass
class TocNode:
    label: str
    href: str
    children: list["TocNode"] = field(default_factory=list)

    def as_payload(self) -> dict[str, object]:
        return {
            "label": self.label,
            "href": self.href,
            "children": [child.as_payload() for child in self.children],
        }


def strip_fragment(href: str) -> str:
    return href.split("#", 1)[0]


def parse_toc(content: str, root_dir: str = "", *, nested: bool = False) -> list[TocNode]:
    """Parse a navigation document into a forest of :class:`TocNode`.

    Content mentioning ``ncx`` is treated as an NCX document, anything else as
    an XHTML navigation document. XHTML nav entries are flattened unless
    ``nested`` is set. Malformed input yields an empty forest.
    """
    try:
        if NCX_MARKER in content:
            return parse_ncx_toc(content, root_dir)
        if nested:
            return parse_nav_toc_tree(content, root_dir)
        return parse_nav_toc(content, root_dir)
    except (EpubFormatError, ValueError) as exc:
        logger.warning("Failed to parse table of contents: %s", exc)
        return []


def _ncx_point(point: XmlNode, root_dir: str) -> TocNode:
    label_node = point.first("navLabel")
    label = text_of(label_node.find_all("text")) if label_node is not None else None
    content_node = point.first("content")
    src = content_node.get("src", "") if content_node is not None else ""
    return TocNode(
        label=label or "",
        href=root_dir + (src or ""),
        children=[_ncx_point(child, root_dir) for child in point.find_all("navPoint")],
    )


def parse_ncx_toc(content: str, root_dir: str = "") -> list[TocNode]:
    root = decode_xml(content)
    nav_map = root.first("navMap")
    if nav_map is None:
        return []
    return [_ncx_point(point, root_dir) for point in nav_map.find_all("navPoint")]


def _clean_label(raw: str) -> str:
    return html.unescape(_TAG_PATTERN.sub("", raw)).strip()


def parse_nav_toc(content: str, root_dir: str = "") -> list[TocNode]:
    """Scan the ``epub:type="toc"`` nav region for linked list items.

    Items come back flat, in document order.
    """
    nav_match = _NAV_TOC_PATTERN.search(content)
    if nav_match is None:
        return []
    entries: list[TocNode] = []
    for match in _NAV_ITEM_PATTERN.finditer(nav_match.group(1)):
        href, label = match.group(1), match.group(2)
        entries.append(TocNode(label=_clean_label(label), href=root_dir + href))
    return entries


def _find_toc_nav(soup: BeautifulSoup) -> Tag | None:
    for nav in soup.find_all("nav"):
        nav_type = (nav.get("epub:type") or "").lower()
        if "toc" in nav_type.split():
            return nav
    return None


def _walk_nav_list(list_tag: Tag, root_dir: str) -> list[TocNode]:
    nodes: list[TocNode] = []
    for item in list_tag.find_all("li", recursive=False):
        anchor = item.find("a", recursive=False) or item.find("span", recursive=False)
        sublist = item.find(["ol", "ul"], recursive=False)
        children = _walk_nav_list(sublist, root_dir) if sublist is not None else []
        if anchor is None:
            # unlabeled grouping item; lift its children one level
            nodes.extend(children)
            continue
        href = anchor.get("href") or ""
        nodes.append(
            TocNode(
                label=anchor.get_text(strip=True),
                href=root_dir + href if href else "",
                children=children,
            )
        )
    return nodes


def parse_nav_toc_tree(content: str, root_dir: str = "") -> list[TocNode]:
    """Walk the nested ``ol``/``ul`` lists of the toc nav, keeping hierarchy."""
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
        soup = BeautifulSoup(content, "html.parser")
    nav = _find_toc_nav(soup)
    if nav is None:
        return []
    top_list = nav.find(["ol", "ul"])
    if top_list is None:
        return []
    return _walk_nav_list(top_list, root_dir)


def iter_toc(toc: Iterable[TocNode]) -> Iterator[TocNode]:
    """Depth-first, pre-order traversal."""
    for node in toc:
        yield node
        yield from iter_toc(node.children)


def flatten_toc(toc: Iterable[TocNode]) -> list[TocNode]:
    return list(iter_toc(toc))


def toc_depth(toc: Sequence[TocNode]) -> int:
    if not toc:
        return 0
    return 1 + max(toc_depth(node.children) for node in toc)


def find_toc_label(toc: Iterable[TocNode], href: str) -> str | None:
    target = strip_fragment(href)
    for node in iter_toc(toc):
        if strip_fragment(node.href) == target:
            return node.label
    return None


def find_spine_index(spine: Sequence[object], href: str) -> int:
    """Return the spine position whose href matches ``href`` ignoring fragments."""
    target = strip_fragment(href)
    for position, item in enumerate(spine):
        item_href = getattr(item, "href", None)
        if item_href is not None and strip_fragment(item_href) == target:
            return getattr(item, "index", position)
    return NOT_FOUND


__all__ = [
    "NOT_FOUND",
    "TocNode",
    "find_spine_index",
    "find_toc_label",
    "flatten_toc",
    "iter_toc",
    "parse_nav_toc",
    "parse_nav_toc_tree",
    "parse_ncx_toc",
    "parse_toc",
    "strip_fragment",
    "toc_depth",
]
