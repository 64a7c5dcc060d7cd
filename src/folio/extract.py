from __future__ import annotations

import logging
import re
import warnings
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING

from bs4 import BeautifulSoup, Comment, XMLParsedAsHTMLWarning

from .book import BookMetadata

if TYPE_CHECKING:
    from .book import EpubBook

logger = logging.getLogger(__name__)

MAX_SUMMARY_LENGTH = 10_000
SUMMARY_PREVIEW_CHARS = 200
DEFAULT_MAX_CONTEXT_LENGTH = 100_000
CONTEXT_RADIUS = 2
NEIGHBOR_PREVIEW_CHARS = 1000

# Tags whose boundaries become line breaks before tags are dropped.
BREAK_TAGS = ["p", "div", "br", "h1", "h2", "h3", "h4", "h5", "h6"]


@dataclass
class ChapterText:
    index: int
    title: str
    content: str
    word_count: int


@dataclass
class BookContent:
    metadata: BookMetadata
    chapters: list[ChapterText] = field(default_factory=list)
    full_text: str = ""
    total_word_count: int = 0
    summary: str = ""

    def as_payload(self) -> dict[str, object]:
        return {
            "metadata": asdict(self.metadata),
            "chapters": [asdict(chapter) for chapter in self.chapters],
            "full_text": self.full_text,
            "total_word_count": self.total_word_count,
            "summary": self.summary,
        }


def strip_html_tags(html: str) -> str:
    """Reduce chapter markup to whitespace-collapsed plain text."""
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
        soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["script", "style"]):
        tag.decompose()
    for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
        comment.extract()
    for tag in soup.find_all(BREAK_TAGS):
        tag.insert_before("\n")
    text = soup.get_text(separator="")
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def count_words(text: str) -> int:
    return len(text.split())


def create_book_summary(content: BookContent) -> str:
    lines = [
        f"Book: {content.metadata.title or 'Unknown'}",
        f"Author: {content.metadata.author or 'Unknown'}",
        f"Total Chapters: {len(content.chapters)}",
        f"Total Words: {content.total_word_count}",
        "",
        "Chapter Overview:",
    ]
    summary = "\n".join(lines) + "\n"
    for chapter in content.chapters:
        preview = re.sub(r"\s+", " ", chapter.content[:SUMMARY_PREVIEW_CHARS])
        summary += f"\n{chapter.title}:\n{preview}...\n"
        if len(summary) > MAX_SUMMARY_LENGTH:
            summary += "\n[Additional chapters omitted for brevity]"
            break
    return summary


def extract_book_content(book: "EpubBook") -> BookContent:
    """Render every spine entry to plain text for chat context."""
    content = BookContent(metadata=book.metadata)
    parts: list[str] = []
    for index in range(book.chapter_count):
        chapter = book.get_chapter(index)
        if not chapter.content.html:
            continue
        plain = strip_html_tags(chapter.content.html)
        entry = ChapterText(
            index=index,
            title=chapter.title or f"Chapter {index + 1}",
            content=plain,
            word_count=count_words(plain),
        )
        content.chapters.append(entry)
        parts.append(f"\n\n--- {entry.title} ---\n\n{plain}")
    content.full_text = "".join(parts)
    content.total_word_count = sum(chapter.word_count for chapter in content.chapters)
    content.summary = create_book_summary(content)
    logger.debug(
        "Extracted %d chapters (%d words)", len(content.chapters), content.total_word_count
    )
    return content


def create_ai_context(
    content: BookContent,
    *,
    current_chapter_index: int = 0,
    include_full_text: bool = False,
    max_context_length: int = DEFAULT_MAX_CONTEXT_LENGTH,
) -> str:
    """Assemble the prompt context for a chat about ``content``.

    Small books can be sent whole. Otherwise the summary is followed by the
    current chapter in full and up to two chapters on either side, truncated.
    """
    context = (
        f"Book Title: {content.metadata.title or 'Unknown'}\n"
        f"Author: {content.metadata.author or 'Unknown'}\n"
        f"Total Chapters: {len(content.chapters)}\n"
        f"Total Words: {content.total_word_count}\n\n"
    )
    if include_full_text and len(content.full_text) < max_context_length:
        return context + "Full Book Content:\n" + content.full_text

    context += "Book Summary:\n" + content.summary + "\n\n"
    start = max(0, current_chapter_index - CONTEXT_RADIUS)
    end = min(len(content.chapters) - 1, current_chapter_index + CONTEXT_RADIUS)
    context += f"\nRelevant Chapters ({start + 1} to {end + 1}):\n"
    for position in range(start, end + 1):
        chapter = content.chapters[position]
        context += f"\n--- {chapter.title} ---\n"
        if position == current_chapter_index:
            context += chapter.content + "\n"
        else:
            context += chapter.content[:NEIGHBOR_PREVIEW_CHARS] + "...\n"
    return context


def should_update_book_content(existing: BookContent | None, book: "EpubBook") -> bool:
    if existing is None:
        return True
    if len(existing.chapters) != book.chapter_count:
        return True
    return (
        existing.metadata.title != book.metadata.title
        or existing.metadata.author != book.metadata.author
    )


__all__ = [
    "BookContent",
    "ChapterText",
    "count_words",
    "create_ai_context",
    "create_book_summary",
    "extract_book_content",
    "should_update_book_content",
    "strip_html_tags",
]
