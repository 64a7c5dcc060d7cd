from __future__ import annotations

import logging
import re
import warnings
from typing import Callable

from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning

logger = logging.getLogger(__name__)

PARAGRAPH_NUMBER_CLASS = "paragraph-number"
BOOKMARK_ICON_CLASS = "bookmark-icon-inline"
PARAGRAPH_NUMBER_ATTR = "data-paragraph-number"
BOOKMARK_ICON = "\U0001f516"

_NUMBER_SPAN_PATTERN = re.compile(
    r'<span class="paragraph-number">\[\d+\]</span>\s*'
)
_NUMBER_ATTR_PATTERN = re.compile(r' data-paragraph-number="\d+"')
_BOOKMARK_ICON_PATTERN = re.compile(r'<span class="bookmark-icon-inline">.*?</span>\s*')

IsBookmarked = Callable[[int], bool]


def remove_paragraph_numbers(html: str) -> str:
    html = _NUMBER_SPAN_PATTERN.sub("", html)
    html = _NUMBER_ATTR_PATTERN.sub("", html)
    return _BOOKMARK_ICON_PATTERN.sub("", html)


def _soup(html: str) -> BeautifulSoup:
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
        return BeautifulSoup(html, "html.parser")


def add_paragraph_numbers(
    html: str,
    is_bookmarked: IsBookmarked | None = None,
    *,
    show_numbers: bool = True,
) -> str:
    """Tag every non-empty ``<p>`` with its 1-based paragraph number.

    With ``show_numbers`` a visible ``[N]`` marker is prepended; bookmarked
    paragraphs additionally get an inline bookmark icon.
    """
    soup = _soup(remove_paragraph_numbers(html))
    count = 0
    for paragraph in soup.find_all("p"):
        if not paragraph.get_text().strip():
            continue
        count += 1
        markers = []
        if show_numbers:
            number = soup.new_tag("span", attrs={"class": PARAGRAPH_NUMBER_CLASS})
            number.string = f"[{count}]"
            markers.append(number)
        if is_bookmarked is not None and is_bookmarked(count):
            icon = soup.new_tag("span", attrs={"class": BOOKMARK_ICON_CLASS})
            icon.string = BOOKMARK_ICON
            markers.append(icon)
        for position, marker in enumerate(markers):
            paragraph.insert(position * 2, marker)
            paragraph.insert(position * 2 + 1, " ")
        paragraph[PARAGRAPH_NUMBER_ATTR] = str(count)
    return str(soup)


def process_paragraph_numbering(
    html: str,
    enabled: bool,
    is_bookmarked: IsBookmarked | None = None,
) -> str:
    if not enabled and is_bookmarked is None:
        return remove_paragraph_numbers(html)
    try:
        return add_paragraph_numbers(html, is_bookmarked, show_numbers=enabled)
    except Exception as exc:  # pragma: no cover - bs4 failures leave content as-is
        logger.error("Error processing paragraph numbering: %s", exc)
        return html


def count_paragraphs(html: str) -> int:
    soup = _soup(html)
    return sum(1 for paragraph in soup.find_all("p") if paragraph.get_text().strip())


__all__ = [
    "BOOKMARK_ICON_CLASS",
    "PARAGRAPH_NUMBER_ATTR",
    "PARAGRAPH_NUMBER_CLASS",
    "add_paragraph_numbers",
    "count_paragraphs",
    "process_paragraph_numbering",
    "remove_paragraph_numbers",
]
