from __future__ import annotations

import logging
import re
import warnings
from dataclasses import dataclass, field
from typing import Iterable, Protocol, Sequence

from bs4 import BeautifulSoup, FeatureNotFound, XMLParsedAsHTMLWarning  # type: ignore

from .epub import BookMetadata, CoverImage, NavItem, UnreadableDocument, open_document
from .progress import Position, Progress, restore_position
from .tokens import normalize_text, tokenize_text

__all__ = [
    "BookUnreadable",
    "Chapter",
    "ExtractionResult",
    "NoReadableContent",
    "OpenedBook",
    "UnitExtractionSkipped",
    "extract_chapters",
    "extract_text_from_markup",
    "find_nav_entry",
    "flatten_navigation",
    "open_book",
]

logger = logging.getLogger(__name__)

# Elements that never belong to the readable narrative.
NON_CONTENT_TAGS = ["script", "style", "nav", "header", "footer"]

# Block elements that should start on a new line when collapsing to text.
BLOCK_LEVEL_TAGS = {
    "address",
    "article",
    "aside",
    "blockquote",
    "dd",
    "div",
    "dl",
    "dt",
    "figcaption",
    "figure",
    "form",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "hgroup",
    "hr",
    "li",
    "main",
    "ol",
    "p",
    "pre",
    "section",
    "table",
    "td",
    "th",
    "tr",
    "ul",
}


class BookUnreadable(RuntimeError):
    """The uploaded file is not a valid book."""


class NoReadableContent(RuntimeError):
    """Every content unit was skipped or empty."""


class UnitExtractionSkipped(RuntimeError):
    """A single content unit could not be turned into text; never escalated."""

    def __init__(self, reference: str, reason: str) -> None:
        super().__init__(f"{reference}: {reason}")
        self.reference = reference
        self.reason = reason


@dataclass(frozen=True, slots=True)
class Chapter:
    id: str
    title: str
    href: str
    content: str
    words: tuple[str, ...]

    @property
    def word_count(self) -> int:
        return len(self.words)


@dataclass(slots=True)
class ExtractionResult:
    chapters: list[Chapter]
    skipped: list[UnitExtractionSkipped] = field(default_factory=list)


@dataclass(slots=True)
class OpenedBook:
    chapters: list[Chapter]
    initial_position: Position
    metadata: BookMetadata
    cover: CoverImage | None = None
    skipped: list[UnitExtractionSkipped] = field(default_factory=list)

    @property
    def total_words(self) -> int:
        return sum(chapter.word_count for chapter in self.chapters)


class RenderableUnit(Protocol):
    reference: str

    def render(self) -> str: ...


class ReadableDocument(Protocol):
    def navigation(self) -> list[NavItem]: ...

    def content_units(self) -> Sequence[RenderableUnit]: ...


def flatten_navigation(items: Iterable[NavItem]) -> list[NavItem]:
    """Pre-order walk of the table of contents: parent before its children."""
    result: list[NavItem] = []
    for item in items:
        result.append(item)
        if item.children:
            result.extend(flatten_navigation(item.children))
    return result


def find_nav_entry(entries: Sequence[NavItem], href: str) -> NavItem | None:
    """
    Match a unit reference against flattened navigation entries.

    The match is deliberately loose (substring or suffix in either direction,
    fragment ignored) so that references differing in directory prefix or
    anchor still pick up their title. It can match the wrong entry in odd
    books; that trade-off is accepted.
    """
    for entry in entries:
        toc_href = entry.href.split("#", 1)[0]
        if (
            toc_href in href
            or href in toc_href
            or href.endswith(toc_href)
            or toc_href.endswith(href)
        ):
            return entry
    return None


def _looks_like_xml(markup: str) -> bool:
    stripped = markup.lstrip()
    lower_head = stripped[:200].lower()
    return stripped.startswith("<?xml") or ("<html" in lower_head and "xmlns" in lower_head)


def _soup_from_markup(markup: str) -> BeautifulSoup:
    if _looks_like_xml(markup):
        for parser in ("lxml-xml", "xml"):
            try:
                soup = BeautifulSoup(markup, parser)
            except FeatureNotFound:
                continue
            # A broken XHTML document loses its body; retry as HTML.
            if soup.find("body") is not None:
                return soup
            break
    for parser in ("lxml", "html.parser"):
        try:
            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
                return BeautifulSoup(markup, parser)
        except FeatureNotFound:
            continue
    return BeautifulSoup(markup, "html.parser")


def extract_text_from_markup(markup: str) -> str:
    """Strip non-content elements and return whitespace-normalized body text."""
    soup = _soup_from_markup(markup)
    for tag in soup.find_all(NON_CONTENT_TAGS):
        tag.decompose()
    for head in soup.find_all("head"):
        head.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    # Keep adjacent blocks such as <p>a</p><p>b</p> from fusing into one word.
    for tag in soup.find_all(BLOCK_LEVEL_TAGS):
        tag.insert_before("\n")
        tag.append("\n")
    body = soup.find("body") or soup
    return normalize_text(body.get_text(separator=""))


def extract_chapters(document: ReadableDocument) -> ExtractionResult:
    """
    Turn a parsed document into chapters in reading order.

    Units that fail to render or parse, or that hold no text, are recorded in
    ``skipped`` and never raised.
    """
    try:
        toc_entries = flatten_navigation(document.navigation())
    except Exception as exc:
        logger.debug("Navigation unavailable, falling back to section titles: %s", exc)
        toc_entries = []
    result = ExtractionResult(chapters=[])
    for unit in document.content_units():
        reference = unit.reference
        try:
            markup = unit.render()
            if not markup:
                raise UnitExtractionSkipped(reference, "empty markup")
            content = extract_text_from_markup(markup)
        except UnitExtractionSkipped as skip:
            result.skipped.append(skip)
            logger.debug("Skipped %s", skip)
            continue
        except Exception as exc:
            skip = UnitExtractionSkipped(reference, str(exc) or type(exc).__name__)
            result.skipped.append(skip)
            logger.debug("Skipped %s", skip)
            continue
        words = tokenize_text(content)
        if not words:
            skip = UnitExtractionSkipped(reference, "no readable text")
            result.skipped.append(skip)
            logger.debug("Skipped %s", skip)
            continue
        toc_entry = find_nav_entry(toc_entries, reference)
        label = toc_entry.label.strip() if toc_entry is not None and toc_entry.label else ""
        title = label or f"Section {len(result.chapters) + 1}"
        result.chapters.append(
            Chapter(
                id=reference,
                title=title,
                href=reference,
                content=content,
                words=tuple(words),
            )
        )
    return result


def open_book(data: bytes, progress: Progress | Position | None = None) -> OpenedBook:
    """
    Open EPUB bytes into chapters and a starting position.

    Raises BookUnreadable when the container cannot be opened and
    NoReadableContent when no unit yields any words; no partial chapter
    list is returned in either case.
    """
    try:
        document = open_document(data)
    except UnreadableDocument as exc:
        raise BookUnreadable("File is not a valid book.") from exc
    with document:
        metadata = document.metadata()
        result = extract_chapters(document)
        cover = document.cover()
    if not result.chapters:
        raise NoReadableContent("This book has no readable text.")
    logger.debug(
        "Extracted %d chapters (%d units skipped)", len(result.chapters), len(result.skipped)
    )
    return OpenedBook(
        chapters=result.chapters,
        initial_position=restore_position(progress, result.chapters),
        metadata=metadata,
        cover=cover,
        skipped=result.skipped,
    )
