from .book import BookMetadata, CoverImage, EpubBook, ReaderOptions, parse_epub
from .chapter import Chapter, ChapterContent
from .errors import ChapterRangeError, EpubError, EpubFormatError, EpubNotFoundError
from .extract import BookContent, create_ai_context, extract_book_content
from .navigation import NOT_FOUND, TocNode
from .storage import ReaderStores

__all__ = [
    "BookMetadata",
    "CoverImage",
    "EpubBook",
    "ReaderOptions",
    "parse_epub",
    "Chapter",
    "ChapterContent",
    "TocNode",
    "NOT_FOUND",
    "EpubError",
    "EpubFormatError",
    "EpubNotFoundError",
    "ChapterRangeError",
    "BookContent",
    "extract_book_content",
    "create_ai_context",
    "ReaderStores",
]
