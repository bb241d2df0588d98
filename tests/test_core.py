from __future__ import annotations

import logging
import zipfile

import pytest

from conftest import EpubLayout, SpineItem, build_epub, corrupt_entry, words_body
from swiftread.core import (
    BookUnreadable,
    NoReadableContent,
    extract_chapters,
    extract_text_from_markup,
    find_nav_entry,
    flatten_navigation,
    open_book,
)
from swiftread.epub import NavItem, UnitRenderError, open_document
from swiftread.progress import Position, Progress


class _FakeUnit:
    def __init__(self, reference: str, markup: str | None = None, error: Exception | None = None) -> None:
        self.reference = reference
        self._markup = markup
        self._error = error

    def render(self) -> str:
        if self._error is not None:
            raise self._error
        return self._markup or ""


class _FakeDocument:
    def __init__(self, units, nav=None, nav_error: Exception | None = None) -> None:
        self._units = units
        self._nav = nav or []
        self._nav_error = nav_error

    def navigation(self):
        if self._nav_error is not None:
            raise self._nav_error
        return self._nav

    def content_units(self):
        return self._units


def test_open_book_extracts_chapters_in_spine_order(sample_epub: bytes) -> None:
    opened = open_book(sample_epub)
    assert [chapter.title for chapter in opened.chapters] == ["Chapter One", "Chapter Two"]
    first, second = opened.chapters
    assert first.id == "text/ch1.xhtml"
    assert first.words == ("Opening", "It", "was", "a", "dark", "night.")
    assert second.words == ("The", "end", "came", "quickly.")
    assert opened.total_words == 10
    assert opened.initial_position == Position(0, 0)
    assert opened.metadata.title == "Test Book"
    assert opened.metadata.author == "Test Author"
    assert opened.cover is not None
    assert opened.cover.media_type == "image/png"
    assert [skip.reference for skip in opened.skipped] == ["styles/book.css"]


def test_extracted_text_drops_head_and_non_content_elements() -> None:
    markup = (
        "<html><head><title>Ignored</title></head><body>"
        "<header>Running head</header><nav>Menu</nav>"
        "<p>First</p><p>paragraph.</p><script>var x = 1;</script>"
        "<div>Second<br/>line</div><footer>Page 3</footer>"
        "</body></html>"
    )
    assert extract_text_from_markup(markup) == "First paragraph. Second line"


def test_extracted_text_handles_xhtml_declaration() -> None:
    markup = (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<html xmlns="http://www.w3.org/1999/xhtml"><head><style>p{}</style></head>'
        "<body><p>Alpha</p><p>Beta   gamma</p></body></html>"
    )
    assert extract_text_from_markup(markup) == "Alpha Beta gamma"


def test_units_without_words_are_skipped_and_numbering_follows_emitted_chapters() -> None:
    document = _FakeDocument(
        [
            _FakeUnit("cover.xhtml", "<html><body><img src='c.jpg'/></body></html>"),
            _FakeUnit("broken.xhtml", error=UnitRenderError("not markup")),
            _FakeUnit("a.xhtml", "<html><body><p>One two</p></body></html>"),
            _FakeUnit("empty.xhtml", ""),
            _FakeUnit("b.xhtml", "<html><body><p>Three</p></body></html>"),
        ]
    )
    result = extract_chapters(document)
    assert [chapter.id for chapter in result.chapters] == ["a.xhtml", "b.xhtml"]
    assert [chapter.title for chapter in result.chapters] == ["Section 1", "Section 2"]
    assert all(chapter.words for chapter in result.chapters)
    assert [skip.reference for skip in result.skipped] == [
        "cover.xhtml",
        "broken.xhtml",
        "empty.xhtml",
    ]


def test_unexpected_render_errors_are_recorded_not_raised(caplog) -> None:
    document = _FakeDocument(
        [
            _FakeUnit("odd.xhtml", error=ValueError("boom")),
            _FakeUnit("ok.xhtml", "<html><body><p>Fine</p></body></html>"),
        ],
        nav_error=RuntimeError("no toc"),
    )
    with caplog.at_level(logging.DEBUG, logger="swiftread.core"):
        result = extract_chapters(document)
    assert [chapter.title for chapter in result.chapters] == ["Section 1"]
    assert result.skipped[0].reason == "boom"
    assert "odd.xhtml" in caplog.text


def test_flatten_navigation_is_preorder() -> None:
    tree = [
        NavItem("part1.xhtml", "Part 1", [NavItem("ch1.xhtml", "Chapter 1"), NavItem("ch2.xhtml", "Chapter 2")]),
        NavItem("part2.xhtml", "Part 2"),
    ]
    assert [item.label for item in flatten_navigation(tree)] == ["Part 1", "Chapter 1", "Chapter 2", "Part 2"]


@pytest.mark.parametrize(
    ("href", "expected"),
    [
        ("Text/chapter3.xhtml", "Three"),
        ("OEBPS/Text/chapter3.xhtml", "Three"),
        ("chapter3.xhtml", "Three"),
        ("appendix.xhtml", None),
    ],
)
def test_find_nav_entry_matches_loosely(href: str, expected: str | None) -> None:
    entries = [NavItem("Text/chapter3.xhtml#sec1", "Three"), NavItem("Text/notes.xhtml", "Notes")]
    entry = find_nav_entry(entries, href)
    assert (entry.label if entry else None) == expected


def test_ncx_is_used_when_there_is_no_nav_document() -> None:
    data = build_epub(
        EpubLayout(
            items=[SpineItem("ch1.xhtml", words_body(3)), SpineItem("ch2.xhtml", words_body(2))],
            ncx=[("ch1.xhtml", "Prologue"), ("ch2.xhtml", "Epilogue")],
        )
    )
    opened = open_book(data)
    assert [chapter.title for chapter in opened.chapters] == ["Prologue", "Epilogue"]


def test_missing_spine_file_is_skipped() -> None:
    data = build_epub(
        EpubLayout(
            items=[
                SpineItem("ch1.xhtml", include_file=False),
                SpineItem("ch2.xhtml", words_body(4)),
            ]
        )
    )
    opened = open_book(data)
    assert [chapter.id for chapter in opened.chapters] == ["ch2.xhtml"]
    assert opened.chapters[0].title == "Section 1"
    assert opened.skipped[0].reference == "ch1.xhtml"


def test_open_book_restores_and_clamps_stored_progress(sample_epub: bytes) -> None:
    opened = open_book(sample_epub, progress=Progress(chapter_index=1, word_index=2, percentage=80.0))
    assert opened.initial_position == Position(1, 2)
    opened = open_book(sample_epub, progress=Progress(chapter_index=9, word_index=99))
    assert opened.initial_position == Position(1, 3)


@pytest.mark.parametrize("data", [b"", b"not a zip at all", b"PK\x03\x04truncated"])
def test_open_book_rejects_non_epub_bytes(data: bytes) -> None:
    with pytest.raises(BookUnreadable):
        open_book(data)


def test_open_book_rejects_zip_without_package_document(tmp_path) -> None:
    path = tmp_path / "plain.zip"
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("readme.txt", "hello")
    with pytest.raises(BookUnreadable):
        open_book(path.read_bytes())


def test_open_book_without_any_words_raises_no_readable_content() -> None:
    data = build_epub(
        EpubLayout(items=[SpineItem("cover.xhtml", "<div><img src='x.png'/></div>"), SpineItem("blank.xhtml", "")])
    )
    with pytest.raises(NoReadableContent):
        open_book(data)


def test_document_close_is_idempotent(sample_epub: bytes) -> None:
    document = open_document(sample_epub)
    document.close()
    document.close()


@pytest.mark.parametrize("member", ["OEBPS/content.opf", "META-INF/container.xml"])
def test_damaged_package_entries_raise_book_unreadable(sample_epub: bytes, member: str) -> None:
    with pytest.raises(BookUnreadable):
        open_book(corrupt_entry(sample_epub, member))


def test_damaged_cover_is_skipped(sample_epub: bytes) -> None:
    opened = open_book(corrupt_entry(sample_epub, "OEBPS/images/cover.png"))
    assert opened.cover is None
    assert [chapter.title for chapter in opened.chapters] == ["Chapter One", "Chapter Two"]
