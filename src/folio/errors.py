from __future__ import annotations


class EpubError(Exception):
    """Base class for errors raised while reading an EPUB."""


class EpubFormatError(EpubError, ValueError):
    """Raised when the archive is not a readable EPUB container."""


class EpubNotFoundError(EpubError, LookupError):
    """Raised when a referenced archive entry does not exist."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class ChapterRangeError(EpubError, IndexError):
    """Raised when a chapter index falls outside the spine."""

    def __init__(self, index: int, count: int) -> None:
        super().__init__(f"Chapter index {index} out of range for {count} chapter(s)")
        self.index = index
        self.count = count


__all__ = [
    "EpubError",
    "EpubFormatError",
    "EpubNotFoundError",
    "ChapterRangeError",
]
