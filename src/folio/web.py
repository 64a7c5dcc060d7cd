from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, Response

from .book import EpubBook, ReaderOptions, ResourceMode
from .errors import ChapterRangeError, EpubError, EpubFormatError, EpubNotFoundError
from .extract import BookContent, create_ai_context, extract_book_content, should_update_book_content
from .library import find_book_path, list_books_sorted
from .navigation import toc_depth
from .paragraphs import process_paragraph_numbering
from .storage import ReaderStores

logger = logging.getLogger(__name__)

DATA_DIRNAME = ".folio"
MAX_LABEL_LENGTH = 200


@dataclass(slots=True)
class WebConfig:
    root: Path
    data_dir: Path | None = None
    resource_mode: ResourceMode = "none"
    nested_nav_toc: bool = False
    paragraph_numbers: bool = False

    def reader_options(self) -> ReaderOptions:
        return ReaderOptions(
            resource_mode=self.resource_mode,
            nested_nav_toc=self.nested_nav_toc,
        )


def _http_error(exc: EpubError) -> HTTPException:
    if isinstance(exc, (EpubNotFoundError, ChapterRangeError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, EpubFormatError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def create_app(config: WebConfig, stores: ReaderStores | None = None) -> FastAPI:
    root = config.root.expanduser().resolve()
    if not root.exists():
        raise FileNotFoundError(f"Library root not found: {root}")
    data_dir = (config.data_dir or root / DATA_DIRNAME).expanduser()
    stores = stores or ReaderStores.at(data_dir)
    options = config.reader_options()

    app = FastAPI(title="folio")
    app.state.config = config
    app.state.root = root
    app.state.stores = stores

    book_lock = threading.Lock()
    books: dict[str, tuple[float, EpubBook]] = {}
    contents: dict[str, BookContent] = {}

    def _load_book(book_id: str) -> EpubBook:
        path = find_book_path(root, book_id)
        if path is None:
            raise HTTPException(status_code=404, detail="Book not found")
        mtime = path.stat().st_mtime
        with book_lock:
            cached = books.get(book_id)
            if cached is not None and cached[0] == mtime:
                return cached[1]
            try:
                book = EpubBook.open(path, options)
            except EpubError as exc:
                logger.warning("Failed to open %s: %s", path.name, exc)
                raise _http_error(exc) from exc
            # replaced books may still be serving requests; they close when collected
            books[book_id] = (mtime, book)
            contents.pop(book_id, None)
            return book

    def _book_content(book_id: str, book: EpubBook) -> BookContent:
        with book_lock:
            existing = contents.get(book_id)
        if not should_update_book_content(existing, book):
            return existing  # type: ignore[return-value]
        try:
            content = extract_book_content(book)
        except EpubError as exc:
            raise _http_error(exc) from exc
        with book_lock:
            contents[book_id] = content
        return content

    @app.get("/api/books")
    def api_books(sort: str = Query("author")) -> JSONResponse:
        payload = []
        for listing in list_books_sorted(root, sort, bookmarks=stores.bookmarks):
            entry: dict[str, object] = {
                "id": listing.book_id,
                "title": listing.title,
                "chapter_count": listing.chapter_count,
            }
            if listing.author:
                entry["author"] = listing.author
            if listing.last_read:
                entry["last_read"] = listing.last_read
            payload.append(entry)
        return JSONResponse({"books": payload})

    @app.get("/api/books/{book_id}")
    def api_book(book_id: str) -> JSONResponse:
        book = _load_book(book_id)
        structure = book.structure()
        structure["id"] = book_id
        structure["chapter_count"] = book.chapter_count
        return JSONResponse(structure)

    @app.get("/api/books/{book_id}/toc")
    def api_toc(book_id: str) -> JSONResponse:
        book = _load_book(book_id)
        return JSONResponse(
            {
                "toc": [node.as_payload() for node in book.toc],
                "depth": toc_depth(book.toc),
            }
        )

    @app.get("/api/books/{book_id}/chapters/{index}")
    def api_chapter(
        book_id: str,
        index: int,
        paragraphs: bool | None = Query(None),
    ) -> JSONResponse:
        book = _load_book(book_id)
        try:
            chapter = book.get_chapter(index)
        except EpubError as exc:
            raise _http_error(exc) from exc
        payload = chapter.as_payload()
        numbered = config.paragraph_numbers if paragraphs is None else paragraphs
        marked = stores.bookmarks.chapter_paragraphs(book_id, index)
        payload["content"]["html"] = process_paragraph_numbering(
            chapter.content.html,
            numbered,
            marked.__contains__ if marked else None,
        )
        return JSONResponse(payload)

    @app.get("/api/books/{book_id}/cover")
    def api_cover(book_id: str) -> Response:
        book = _load_book(book_id)
        cover = book.cover_image()
        if cover is None:
            raise HTTPException(status_code=404, detail="Cover not found")
        return Response(content=cover.data, media_type=cover.media_type or "image/jpeg")

    @app.get("/api/books/{book_id}/context")
    def api_context(
        book_id: str,
        chapter: int = Query(0),
        full: bool = Query(False),
    ) -> JSONResponse:
        book = _load_book(book_id)
        content = _book_content(book_id, book)
        context = create_ai_context(
            content,
            current_chapter_index=chapter,
            include_full_text=full,
        )
        return JSONResponse(
            {
                "metadata": asdict(content.metadata),
                "total_word_count": content.total_word_count,
                "chapter_count": len(content.chapters),
                "context": context,
            }
        )

    @app.get("/api/books/{book_id}/bookmarks")
    def api_bookmarks(book_id: str) -> JSONResponse:
        _load_book(book_id)
        return JSONResponse({"bookmarks": stores.bookmarks.get_book(book_id)})

    @app.post("/api/books/{book_id}/bookmarks")
    def api_add_bookmark(
        book_id: str,
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        book = _load_book(book_id)
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload.")
        chapter_index = payload.get("chapter_index")
        if not isinstance(chapter_index, int) or not 0 <= chapter_index < book.chapter_count:
            raise HTTPException(status_code=400, detail="chapter_index is out of range.")
        paragraph_number = payload.get("paragraph_number")
        if not isinstance(paragraph_number, int) or paragraph_number < 1:
            raise HTTPException(status_code=400, detail="paragraph_number must be positive.")
        label_value = payload.get("label")
        if label_value is not None and not isinstance(label_value, str):
            raise HTTPException(status_code=400, detail="label must be a string or null.")
        label = (label_value or "").strip()[:MAX_LABEL_LENGTH] or None
        record = {
            "chapter_index": chapter_index,
            "paragraph_number": paragraph_number,
            "chapter_title": book.chapter_title(chapter_index),
            "label": label,
        }
        text = payload.get("text")
        if isinstance(text, str):
            record["text"] = text
        if not stores.bookmarks.save(book_id, record):
            raise HTTPException(status_code=500, detail="Failed to save bookmark.")
        return JSONResponse({"bookmarks": stores.bookmarks.get_book(book_id)})

    @app.delete("/api/books/{book_id}/bookmarks/{bookmark_id}")
    def api_delete_bookmark(book_id: str, bookmark_id: str) -> JSONResponse:
        _load_book(book_id)
        if not stores.bookmarks.remove(book_id, bookmark_id):
            raise HTTPException(status_code=404, detail="Bookmark not found.")
        return JSONResponse({"bookmarks": stores.bookmarks.get_book(book_id)})

    return app


__all__ = ["WebConfig", "create_app"]
