from __future__ import annotations

from folio.paragraphs import (
    BOOKMARK_ICON_CLASS,
    add_paragraph_numbers,
    count_paragraphs,
    process_paragraph_numbering,
    remove_paragraph_numbers,
)

HTML = "<p>One</p><p> </p><p>Two <em>more</em></p>"


def test_numbers_non_empty_paragraphs() -> None:
    numbered = add_paragraph_numbers(HTML)
    assert numbered == (
        '<p data-paragraph-number="1"><span class="paragraph-number">[1]</span> One</p>'
        "<p> </p>"
        '<p data-paragraph-number="2"><span class="paragraph-number">[2]</span> Two <em>more</em></p>'
    )


def test_removing_numbers_restores_markup() -> None:
    assert remove_paragraph_numbers(add_paragraph_numbers(HTML)) == HTML


def test_numbering_twice_does_not_stack_markers() -> None:
    once = add_paragraph_numbers(HTML)
    assert add_paragraph_numbers(once) == once


def test_bookmarked_paragraphs_get_icon() -> None:
    numbered = add_paragraph_numbers(HTML, lambda number: number == 2)
    assert numbered.count(BOOKMARK_ICON_CLASS) == 1
    assert '<span class="paragraph-number">[2]</span> <span class="bookmark-icon-inline">' in numbered
    assert remove_paragraph_numbers(numbered) == HTML


def test_icons_without_visible_numbers() -> None:
    marked = process_paragraph_numbering(HTML, False, lambda number: number == 1)
    assert "paragraph-number\">" not in marked
    assert marked.startswith('<p data-paragraph-number="1"><span class="bookmark-icon-inline">')


def test_disabled_numbering_strips_existing_markers() -> None:
    numbered = add_paragraph_numbers(HTML)
    assert process_paragraph_numbering(numbered, False) == HTML


def test_count_paragraphs_skips_blank_ones() -> None:
    assert count_paragraphs(HTML) == 2
    assert count_paragraphs("<div>no paragraphs</div>") == 0
