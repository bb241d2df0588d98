from __future__ import annotations

import logging
import time
from pathlib import Path
from uuid import uuid4

from .core import BookUnreadable, NoReadableContent, open_book
from .library import Book, Library
from .progress import Progress

__all__ = [
    "UPLOAD_REJECTED_MESSAGE",
    "UploadRejected",
    "import_book",
    "normalize_upload_filename",
]

logger = logging.getLogger(__name__)

UPLOAD_REJECTED_MESSAGE = "Could not import this file. Please upload a valid EPUB book."
UNKNOWN_AUTHOR = "Unknown Author"


class UploadRejected(ValueError):
    """Raised when an uploaded file cannot become a readable book."""


def normalize_upload_filename(filename: str | None) -> str:
    if isinstance(filename, str):
        candidate = Path(filename.replace("\\", "/")).name.strip()
    else:
        candidate = ""
    if not candidate:
        candidate = "upload.epub"
    if not candidate.lower().endswith(".epub"):
        candidate = f"{candidate}.epub"
    return candidate


def _title_from_filename(filename: str) -> str:
    stem = filename[: -len(".epub")] if filename.lower().endswith(".epub") else filename
    return stem.strip() or "Untitled"


def import_book(library: Library, data: bytes, filename: str | None = None) -> Book:
    """
    Validate an uploaded EPUB and store it with zeroed progress.

    The book is fully extracted once so that files with no readable text are
    rejected up front instead of failing on first open.
    """
    name = normalize_upload_filename(filename)
    try:
        opened = open_book(data)
    except (BookUnreadable, NoReadableContent) as exc:
        logger.info("Rejected upload %s: %s", name, exc)
        raise UploadRejected(UPLOAD_REJECTED_MESSAGE) from exc
    metadata = opened.metadata
    book = Book(
        id=uuid4().hex,
        title=(metadata.title or "").strip() or _title_from_filename(name),
        author=(metadata.author or "").strip() or UNKNOWN_AUTHOR,
        added_at=time.time(),
        last_read_at=None,
        progress=Progress(),
    )
    book = library.save_book(book, data, cover=opened.cover)
    logger.info(
        "Imported %s as %s (%d chapters, %d words)",
        name,
        book.id,
        len(opened.chapters),
        opened.total_words,
    )
    return book
