from __future__ import annotations

import json
import os
import re
import shutil
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path

from .epub import CoverImage
from .progress import Progress

__all__ = [
    "BOOK_METADATA_FILENAME",
    "Book",
    "BookNotFound",
    "Library",
    "PersistenceWriteFailed",
    "configure_library",
    "default_library_root",
    "get_library",
]

BOOK_METADATA_FILENAME = ".swiftread-book.json"
SOURCE_FILENAME = "book.epub"
LIBRARY_ENV_VAR = "SWIFTREAD_LIBRARY"
BOOK_STATE_VERSION = 1
_COVER_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
}
_BOOK_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class BookNotFound(LookupError):
    """Raised when a book id has no stored record."""


class PersistenceWriteFailed(RuntimeError):
    """Raised when a record could not be written to disk."""


@dataclass(slots=True)
class Book:
    id: str
    title: str
    author: str
    added_at: float
    last_read_at: float | None = None
    progress: Progress = field(default_factory=Progress)
    cover_file: str | None = None
    cover_media_type: str | None = None

    def as_payload(self) -> dict[str, object]:
        return {
            "version": BOOK_STATE_VERSION,
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "addedAt": self.added_at,
            "lastReadAt": self.last_read_at,
            "progress": self.progress.as_payload(),
            "cover": self.cover_file,
            "coverMediaType": self.cover_media_type,
        }

    @classmethod
    def from_payload(cls, payload: object) -> "Book | None":
        if not isinstance(payload, dict):
            return None
        book_id = payload.get("id")
        if not isinstance(book_id, str) or not book_id:
            return None
        title = payload.get("title")
        author = payload.get("author")
        added_at = payload.get("addedAt")
        last_read_at = payload.get("lastReadAt")
        cover_file = payload.get("cover")
        cover_media_type = payload.get("coverMediaType")
        return cls(
            id=book_id,
            title=title if isinstance(title, str) else book_id,
            author=author if isinstance(author, str) else "Unknown Author",
            added_at=float(added_at) if isinstance(added_at, (int, float)) else 0.0,
            last_read_at=float(last_read_at) if isinstance(last_read_at, (int, float)) else None,
            progress=Progress.from_payload(payload.get("progress")),
            cover_file=cover_file if isinstance(cover_file, str) else None,
            cover_media_type=cover_media_type if isinstance(cover_media_type, str) else None,
        )


def _write_json_atomic(path: Path, payload: dict[str, object]) -> None:
    tmp_path = path.with_name(f"{path.name}.tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(tmp_path, path)


class Library:
    """
    On-disk book store: one directory per book holding its metadata record,
    the original EPUB bytes and an optional cover image.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.lock = threading.Lock()

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _book_dir(self, book_id: str) -> Path:
        if not isinstance(book_id, str) or not _BOOK_ID_PATTERN.match(book_id):
            raise BookNotFound(f"Invalid book id: {book_id!r}")
        return self.root / book_id

    def _read_book(self, book_dir: Path) -> Book | None:
        path = book_dir / BOOK_METADATA_FILENAME
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return Book.from_payload(raw)

    def _write_book(self, book_dir: Path, book: Book) -> None:
        try:
            _write_json_atomic(book_dir / BOOK_METADATA_FILENAME, book.as_payload())
        except OSError as exc:
            raise PersistenceWriteFailed(f"Could not write {book.id}: {exc}") from exc

    def save_book(self, book: Book, data: bytes, cover: CoverImage | None = None) -> Book:
        book_dir = self._book_dir(book.id)
        with self.lock:
            try:
                book_dir.mkdir(parents=True, exist_ok=True)
                (book_dir / SOURCE_FILENAME).write_bytes(data)
                if cover is not None and cover.data:
                    media_type = (cover.media_type or "").lower()
                    suffix = _COVER_EXTENSIONS.get(media_type) or Path(cover.path).suffix or ".img"
                    cover_name = f"cover{suffix}"
                    (book_dir / cover_name).write_bytes(cover.data)
                    book = replace(book, cover_file=cover_name, cover_media_type=cover.media_type)
            except OSError as exc:
                raise PersistenceWriteFailed(f"Could not store {book.id}: {exc}") from exc
            self._write_book(book_dir, book)
        return book

    def load_book(self, book_id: str) -> Book | None:
        try:
            book_dir = self._book_dir(book_id)
        except BookNotFound:
            return None
        with self.lock:
            return self._read_book(book_dir)

    def load_raw_bytes(self, book_id: str) -> bytes | None:
        try:
            book_dir = self._book_dir(book_id)
        except BookNotFound:
            return None
        try:
            return (book_dir / SOURCE_FILENAME).read_bytes()
        except OSError:
            return None

    def load_cover(self, book_id: str) -> CoverImage | None:
        book = self.load_book(book_id)
        if book is None or not book.cover_file:
            return None
        cover_path = self.root / book.id / book.cover_file
        try:
            data = cover_path.read_bytes()
        except OSError:
            return None
        return CoverImage(path=str(cover_path), media_type=book.cover_media_type, data=data)

    def save_progress(self, book_id: str, progress: Progress) -> Book:
        """Store ``progress`` and stamp the book's last-read time."""
        book_dir = self._book_dir(book_id)
        with self.lock:
            book = self._read_book(book_dir)
            if book is None:
                raise BookNotFound(f"Book not found: {book_id}")
            updated = replace(book, progress=progress, last_read_at=time.time())
            self._write_book(book_dir, updated)
        return updated

    def list_books(self) -> list[Book]:
        if not self.root.exists():
            return []
        books: list[Book] = []
        with self.lock:
            for entry in self.root.iterdir():
                if not entry.is_dir():
                    continue
                book = self._read_book(entry)
                if book is not None:
                    books.append(book)
        books.sort(key=lambda book: (-book.added_at, book.title.casefold(), book.id))
        return books

    def delete_book(self, book_id: str) -> bool:
        try:
            book_dir = self._book_dir(book_id)
        except BookNotFound:
            return False
        with self.lock:
            if not book_dir.exists():
                return False
            shutil.rmtree(book_dir)
        return True


_LIBRARY: Library | None = None
_LIBRARY_LOCK = threading.Lock()


def default_library_root() -> Path:
    env_root = os.environ.get(LIBRARY_ENV_VAR)
    if env_root:
        return Path(env_root).expanduser()
    return Path.home() / ".swiftread"


def get_library() -> Library:
    """Process-wide library handle, opened on first use."""
    global _LIBRARY
    with _LIBRARY_LOCK:
        if _LIBRARY is None:
            library = Library(default_library_root())
            library.ensure_root()
            _LIBRARY = library
        return _LIBRARY


def configure_library(root: Path | str) -> Library:
    global _LIBRARY
    library = Library(Path(root).expanduser())
    library.ensure_root()
    with _LIBRARY_LOCK:
        _LIBRARY = library
    return library
