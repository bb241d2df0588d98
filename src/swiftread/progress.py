from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Mapping, Sequence

if TYPE_CHECKING:
    from .core import Chapter

__all__ = [
    "DEFAULT_SAVE_INTERVAL",
    "Position",
    "Progress",
    "ProgressSaver",
    "build_progress",
    "compute_percentage",
    "restore_position",
]

logger = logging.getLogger(__name__)

DEFAULT_SAVE_INTERVAL = 5.0


@dataclass(frozen=True, slots=True)
class Position:
    chapter_index: int = 0
    word_index: int = 0


@dataclass(frozen=True, slots=True)
class Progress:
    chapter_index: int = 0
    word_index: int = 0
    percentage: float = 0.0

    @property
    def position(self) -> Position:
        return Position(self.chapter_index, self.word_index)

    def as_payload(self) -> dict[str, float | int]:
        return {
            "chapterIndex": self.chapter_index,
            "wordIndex": self.word_index,
            "percentage": self.percentage,
        }

    @classmethod
    def from_payload(cls, payload: object) -> "Progress":
        if not isinstance(payload, Mapping):
            return cls()
        chapter = payload.get("chapterIndex")
        word = payload.get("wordIndex")
        percentage = payload.get("percentage")
        return cls(
            chapter_index=chapter if isinstance(chapter, int) and not isinstance(chapter, bool) else 0,
            word_index=word if isinstance(word, int) and not isinstance(word, bool) else 0,
            percentage=(
                float(percentage)
                if isinstance(percentage, (int, float)) and not isinstance(percentage, bool)
                else 0.0
            ),
        )


def compute_percentage(position: Position, chapters: Sequence["Chapter"]) -> float:
    """
    Completion across the whole book for ``position``.

    Words in chapters before the current one count in full, plus the word
    index inside the current chapter. A book without words is 0% read.
    """
    total_words = 0
    words_before = 0
    for index, chapter in enumerate(chapters):
        count = len(chapter.words)
        if index < position.chapter_index:
            words_before += count
        elif index == position.chapter_index:
            words_before += position.word_index
        total_words += count
    if total_words <= 0:
        return 0.0
    return words_before / total_words * 100.0


def restore_position(progress: Progress | Position | None, chapters: Sequence["Chapter"]) -> Position:
    """Reuse a stored position, clamped to the freshly extracted chapter table."""
    if progress is None or not chapters:
        return Position(0, 0)
    chapter_index = min(max(progress.chapter_index, 0), len(chapters) - 1)
    word_count = len(chapters[chapter_index].words)
    word_index = min(max(progress.word_index, 0), max(word_count - 1, 0))
    return Position(chapter_index, word_index)


def build_progress(position: Position, chapters: Sequence["Chapter"]) -> Progress:
    return Progress(
        chapter_index=position.chapter_index,
        word_index=position.word_index,
        percentage=compute_percentage(position, chapters),
    )


class ProgressSaver:
    """
    Periodically persist the latest reading position.

    ``read_position`` is polled on a fixed wall-clock cadence; ``write`` receives
    the computed Progress. Write failures are logged and left to the next round.
    """

    def __init__(
        self,
        chapters: Sequence["Chapter"],
        read_position: Callable[[], Position],
        write: Callable[[Progress], None],
        *,
        interval: float = DEFAULT_SAVE_INTERVAL,
    ) -> None:
        self.chapters = chapters
        self.read_position = read_position
        self.write = write
        self.interval = max(0.05, float(interval))
        self.lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        with self.lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._save_loop, name="swiftread-progress", daemon=True
            )
            self._thread.start()

    def stop(self, *, flush: bool = True) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 1)
        self._thread = None
        if flush:
            self.flush()

    def flush(self, position: Position | None = None) -> Progress | None:
        """Save now; returns the written Progress, or None if the write failed."""
        target = position if position is not None else self.read_position()
        progress = build_progress(target, self.chapters)
        try:
            self.write(progress)
        except Exception as exc:
            logger.warning("Progress save failed (%s); will retry on the next save.", exc)
            return None
        logger.debug(
            "Saved progress chapter=%d word=%d (%.2f%%)",
            progress.chapter_index,
            progress.word_index,
            progress.percentage,
        )
        return progress

    def _save_loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.flush()
