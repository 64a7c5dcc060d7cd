from __future__ import annotations

import logging
import re
import warnings
from dataclasses import dataclass
from typing import Callable

from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning

from .archive import EpubArchive

logger = logging.getLogger(__name__)

_BODY_PATTERN = re.compile(r"<body[^>]*>([\s\S]*)</body>", re.IGNORECASE)
_IMG_SRC_PATTERN = re.compile(
    r"(<img\b[^>]*?(?<![\w-])src\s*=\s*)([\"'])(.*?)\2",
    re.IGNORECASE,
)
_SVG_IMAGE_PATTERN = re.compile(
    r"(<image\b[^>]*?(?<![\w-])(?:xlink:)?href\s*=\s*)([\"'])(.*?)\2",
    re.IGNORECASE,
)
_EXTERNAL_PREFIXES = ("data:", "http:", "https:", "mailto:", "#")


@dataclass(frozen=True)
class ChapterContent:
    html: str
    styles: str


@dataclass(frozen=True)
class Chapter:
    index: int
    title: str
    content: ChapterContent
    href: str

    def as_payload(self) -> dict[str, object]:
        return {
            "index": self.index,
            "title": self.title,
            "href": self.href,
            "content": {"html": self.content.html, "styles": self.content.styles},
        }


def directory_of(path: str) -> str:
    """Return the directory part of an archive path, with a trailing slash."""
    cut = path.rfind("/")
    return path[: cut + 1] if cut >= 0 else ""


def resolve_path(base_dir: str, relative: str) -> str:
    """Resolve ``relative`` against ``base_dir`` inside the archive.

    ``.`` segments are dropped, ``..`` pops one segment and a leading ``/``
    makes the path relative to the archive root.
    """
    if relative.startswith("/"):
        return relative[1:]
    segments = [part for part in base_dir.split("/") if part]
    for part in relative.split("/"):
        if not part or part == ".":
            continue
        if part == "..":
            if segments:
                segments.pop()
            continue
        segments.append(part)
    return "/".join(segments)


def _soup(markup: str) -> BeautifulSoup:
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
        return BeautifulSoup(markup, "html.parser")


def _is_stylesheet_link(tag) -> bool:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return any(token.lower() == "stylesheet" for token in rel) and bool(tag.get("href"))


def collect_styles(markup: str, chapter_dir: str, archive: EpubArchive) -> str:
    """Inline ``<style>`` blocks in document order, then linked stylesheets."""
    soup = _soup(markup)
    styles: list[str] = [
        "".join(str(child) for child in style.contents) for style in soup.find_all("style")
    ]
    for link in soup.find_all("link"):
        if not _is_stylesheet_link(link):
            continue
        css_path = resolve_path(chapter_dir, link["href"].split("#", 1)[0])
        entry = archive.entry(css_path)
        if entry is None:
            logger.warning("Stylesheet not found in archive: %s", css_path)
            continue
        styles.append(entry.as_text())
    return "\n".join(styles)


def extract_body(markup: str) -> str:
    match = _BODY_PATTERN.search(markup)
    return match.group(1) if match else markup


def rewrite_resource_refs(
    markup: str,
    chapter_dir: str,
    to_url: Callable[[str], str | None],
) -> str:
    """Replace image references with whatever ``to_url`` returns for them.

    References ``to_url`` cannot resolve are left untouched.
    """

    def _replace(match: re.Match[str]) -> str:
        prefix, quote, ref = match.group(1), match.group(2), match.group(3)
        if not ref or ref.lower().startswith(_EXTERNAL_PREFIXES):
            return match.group(0)
        path = resolve_path(chapter_dir, ref.split("#", 1)[0])
        url = to_url(path)
        if url is None:
            logger.warning("Resource not found in archive: %s", path)
            return match.group(0)
        return f"{prefix}{quote}{url}{quote}"

    markup = _IMG_SRC_PATTERN.sub(_replace, markup)
    return _SVG_IMAGE_PATTERN.sub(_replace, markup)


def fallback_title(index: int) -> str:
    return f"Chapter {index + 1}"


__all__ = [
    "Chapter",
    "ChapterContent",
    "collect_styles",
    "directory_of",
    "extract_body",
    "fallback_title",
    "resolve_path",
    "rewrite_resource_refs",
]
