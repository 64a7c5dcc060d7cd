from __future__ import annotations

from epub_factory import sample_epub

from folio.book import BookMetadata, EpubBook
from folio.extract import (
    BookContent,
    ChapterText,
    count_words,
    create_ai_context,
    create_book_summary,
    extract_book_content,
    should_update_book_content,
    strip_html_tags,
)


def test_strip_html_tags_drops_scripts_styles_and_comments() -> None:
    html = (
        "<style>p { color: red; }</style><p>Hello</p>"
        "<p>World   <b>bold</b></p><script>alert(1)</script><!-- hidden -->"
    )
    assert strip_html_tags(html) == "Hello World bold"


def test_paragraph_boundaries_become_spaces() -> None:
    assert strip_html_tags("<p>end.</p><p>Start</p>") == "end. Start"
    assert strip_html_tags("line<br/>break") == "line break"


def test_count_words() -> None:
    assert count_words("  one two\nthree  ") == 3
    assert count_words("") == 0


def test_extract_book_content_collects_chapters() -> None:
    book = EpubBook.parse(sample_epub())
    content = extract_book_content(book)
    assert [chapter.title for chapter in content.chapters] == ["Opening", "Second"]
    assert content.chapters[0].content == "Hello world"
    assert content.chapters[1].content == "Second Another paragraph here. Last one."
    assert content.total_word_count == 8
    assert "--- Opening ---" in content.full_text
    assert content.summary.startswith("Book: Sample Book\nAuthor: Jane Doe\nTotal Chapters: 2")


def _content(chapter_count: int, words: int = 5) -> BookContent:
    chapters = [
        ChapterText(index=i, title=f"Ch {i}", content=" ".join(["word"] * words), word_count=words)
        for i in range(chapter_count)
    ]
    content = BookContent(
        metadata=BookMetadata(title="Long Book", author="A. Writer"),
        chapters=chapters,
        full_text="".join(f"\n\n--- {c.title} ---\n\n{c.content}" for c in chapters),
        total_word_count=words * chapter_count,
    )
    content.summary = create_book_summary(content)
    return content


def test_full_text_context_when_small_enough() -> None:
    content = _content(2)
    context = create_ai_context(content, include_full_text=True)
    assert context.startswith("Book Title: Long Book\nAuthor: A. Writer\n")
    assert "Full Book Content:" in context
    assert "Book Summary:" not in context


def test_context_falls_back_to_surrounding_chapters() -> None:
    content = _content(10)
    context = create_ai_context(content, current_chapter_index=5, include_full_text=True, max_context_length=10)
    assert "Book Summary:" in context
    assert "Relevant Chapters (4 to 8):" in context
    assert "--- Ch 2 ---" not in context.split("Relevant Chapters")[1]
    assert "--- Ch 3 ---" in context
    assert "--- Ch 7 ---" in context
    assert "--- Ch 8 ---" not in context.split("Relevant Chapters")[1]


def test_context_window_is_clamped_at_book_edges() -> None:
    context = create_ai_context(_content(3), current_chapter_index=0)
    assert "Relevant Chapters (1 to 3):" in context


def test_summary_is_truncated_for_long_books() -> None:
    content = _content(200, words=100)
    assert content.summary.endswith("[Additional chapters omitted for brevity]")


def test_should_update_book_content() -> None:
    book = EpubBook.parse(sample_epub())
    assert should_update_book_content(None, book)
    content = extract_book_content(book)
    assert not should_update_book_content(content, book)
    renamed = EpubBook.parse(sample_epub(title="Renamed"))
    assert should_update_book_content(content, renamed)
