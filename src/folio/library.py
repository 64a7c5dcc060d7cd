from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .book import BookMetadata, EpubBook
from .errors import EpubError
from .storage import BookmarkStore

logger = logging.getLogger(__name__)

EPUB_SUFFIX = ".epub"


@dataclass(slots=True)
class BookListing:
    book_id: str
    path: Path
    metadata: BookMetadata | None
    author: str | None
    title: str
    chapter_count: int
    modified: float
    last_read: float


def book_id_for(path: Path) -> str:
    return path.stem


def find_book_path(root: Path, book_id: str) -> Path | None:
    candidate = root / f"{book_id}{EPUB_SUFFIX}"
    if candidate.is_file() and candidate.resolve().parent == root.resolve():
        return candidate
    return None


def _last_read_timestamp(bookmarks: BookmarkStore | None, book_id: str) -> float:
    if bookmarks is None:
        return 0.0
    latest = 0.0
    for entry in bookmarks.get_book(book_id):
        stamp = entry.get("updated_at")
        if not isinstance(stamp, str):
            continue
        try:
            latest = max(latest, datetime.fromisoformat(stamp).timestamp())
        except ValueError:
            continue
    return latest


def list_books_sorted(
    root: Path,
    mode: str = "author",
    bookmarks: BookmarkStore | None = None,
) -> list[BookListing]:
    normalized_mode = mode.lower().strip()
    if normalized_mode not in {"author", "recent", "read"}:
        normalized_mode = "author"
    entries: list[tuple[tuple[object, ...], BookListing]] = []
    for entry in root.iterdir():
        if not entry.is_file() or entry.suffix.lower() != EPUB_SUFFIX:
            continue
        try:
            book = EpubBook.open(entry)
        except (EpubError, OSError) as exc:
            logger.warning("Skipping unreadable book %s: %s", entry.name, exc)
            continue
        metadata = book.metadata
        chapter_count = book.chapter_count
        book.close()
        author = metadata.author.strip() if metadata.author else None
        title = metadata.title.strip() if metadata.title else entry.stem
        normalized_author = author.casefold() if author else ""
        normalized_title = title.casefold()
        try:
            modified = entry.stat().st_mtime
        except OSError:
            modified = 0.0
        book_id = book_id_for(entry)
        last_read = _last_read_timestamp(bookmarks, book_id)
        listing = BookListing(
            book_id=book_id,
            path=entry,
            metadata=metadata,
            author=author,
            title=title,
            chapter_count=chapter_count,
            modified=modified,
            last_read=last_read,
        )
        if normalized_mode == "recent":
            sort_key = (
                -modified,
                0 if author else 1,
                normalized_author,
                normalized_title,
                entry.name.casefold(),
            )
        elif normalized_mode == "read":
            has_read = last_read > 0
            sort_key = (
                0 if has_read else 1,
                -last_read if has_read else 0,
                -modified,
                normalized_title,
                entry.name.casefold(),
            )
        else:
            sort_key = (
                0 if author else 1,
                normalized_author,
                normalized_title,
                entry.name.casefold(),
            )
        entries.append((sort_key, listing))
    entries.sort(key=lambda item: item[0])
    return [listing for _, listing in entries]


__all__ = ["BookListing", "book_id_for", "find_book_path", "list_books_sorted"]
