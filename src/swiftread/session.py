from __future__ import annotations

import logging

from .core import Chapter, OpenedBook, open_book
from .library import Book, BookNotFound, Library, get_library
from .playback import (
    DEFAULT_CHAPTER_SETTLE_DELAY,
    DEFAULT_WPM,
    PlaybackEngine,
    PlaybackState,
    Scheduler,
)
from .progress import DEFAULT_SAVE_INTERVAL, Progress, ProgressSaver

__all__ = [
    "ReadingSession",
    "open_session",
]

logger = logging.getLogger(__name__)

# Engine events that change chapter or position outside the tick cadence; saved immediately.
_IMMEDIATE_SAVE_REASONS = {"chapter", "seek", "auto-advance", "finished"}


class ReadingSession:
    """A book opened for reading: engine plus periodic progress persistence."""

    def __init__(
        self,
        library: Library,
        book: Book,
        opened: OpenedBook,
        *,
        scheduler: Scheduler | None = None,
        wpm: int = DEFAULT_WPM,
        save_interval: float = DEFAULT_SAVE_INTERVAL,
        chapter_settle_delay: float = DEFAULT_CHAPTER_SETTLE_DELAY,
    ) -> None:
        self.library = library
        self.book = book
        self.opened = opened
        self.engine = PlaybackEngine(
            opened.chapters,
            scheduler=scheduler,
            wpm=wpm,
            position=opened.initial_position,
            chapter_settle_delay=chapter_settle_delay,
        )
        self.saver = ProgressSaver(
            opened.chapters,
            read_position=lambda: self.engine.position,
            write=self._write_progress,
            interval=save_interval,
        )
        self._unsubscribe = self.engine.on_position_change(self._on_state)
        self.last_saved: Progress | None = None
        self._closed = False

    @property
    def chapters(self) -> list[Chapter]:
        return self.opened.chapters

    def __enter__(self) -> "ReadingSession":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start(self) -> None:
        self.saver.start()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        self.engine.close()
        self.saver.stop(flush=True)

    def _write_progress(self, progress: Progress) -> None:
        self.book = self.library.save_progress(self.book.id, progress)
        self.last_saved = progress

    def _on_state(self, state: PlaybackState) -> None:
        if state.reason in _IMMEDIATE_SAVE_REASONS:
            self.saver.flush(state.position)

    def state_payload(self) -> dict[str, object]:
        engine = self.engine
        state = engine.snapshot()
        before, pivot, after = engine.orp_parts()
        chapter = engine.current_chapter
        payload = state.as_payload()
        payload.update(
            {
                "bookId": self.book.id,
                "chapterCount": len(self.chapters),
                "chapterTitle": chapter.title if chapter is not None else None,
                "word": engine.current_word,
                "orp": {"before": before, "pivot": pivot, "after": after},
                "chapterProgress": engine.chapter_progress,
                "elapsedSeconds": engine.elapsed_seconds,
                "totalSeconds": engine.total_seconds,
            }
        )
        return payload


def open_session(
    book_id: str,
    library: Library | None = None,
    **options,
) -> ReadingSession:
    """
    Load a stored book and position a playback engine at its saved progress.

    Raises BookNotFound for unknown ids or missing files, and lets
    BookUnreadable / NoReadableContent from extraction propagate.
    """
    store = library if library is not None else get_library()
    book = store.load_book(book_id)
    if book is None:
        raise BookNotFound(f"Book not found: {book_id}")
    data = store.load_raw_bytes(book_id)
    if data is None:
        raise BookNotFound(f"Book file not found: {book_id}")
    opened = open_book(data, progress=book.progress)
    logger.debug("Opened %s at %s", book.id, opened.initial_position)
    return ReadingSession(store, book, opened, **options)
