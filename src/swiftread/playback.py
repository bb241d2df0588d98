from __future__ import annotations

import heapq
import itertools
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Protocol, Sequence

from .orp import calculate_reading_time, split_at_orp
from .progress import Position

if TYPE_CHECKING:
    from .core import Chapter

__all__ = [
    "DEFAULT_CHAPTER_SETTLE_DELAY",
    "DEFAULT_WPM",
    "MAX_WPM",
    "MIN_WPM",
    "WPM_STEP",
    "ManualScheduler",
    "PlaybackEngine",
    "PlaybackState",
    "Scheduler",
    "ThreadingScheduler",
    "TimerHandle",
    "clamp_wpm",
    "tick_interval",
]

logger = logging.getLogger(__name__)

MIN_WPM = 100
MAX_WPM = 1200
WPM_STEP = 50
DEFAULT_WPM = 300
DEFAULT_CHAPTER_SETTLE_DELAY = 1.0
# Float slack when comparing simulated due times.
_CLOCK_EPSILON = 1e-9


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class ThreadingScheduler:
    """Wall-clock scheduler backed by ``threading.Timer``."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(0.0, delay), callback)
        timer.daemon = True
        timer.start()
        return timer


class _ManualTimer:
    __slots__ = ("due", "callback", "cancelled")

    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Simulated clock; timers only fire inside ``advance``."""

    def __init__(self) -> None:
        self.now = 0.0
        self._queue: list[tuple[float, int, _ManualTimer]] = []
        self._counter = itertools.count()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(self.now + max(0.0, delay), callback)
        heapq.heappush(self._queue, (timer.due, next(self._counter), timer))
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for _, _, timer in self._queue if not timer.cancelled)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due timers in order. Returns the number fired."""
        target = self.now + max(0.0, seconds)
        fired = 0
        while self._queue and self._queue[0][0] <= target + _CLOCK_EPSILON:
            due, _, timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self.now = max(self.now, due)
            timer.cancelled = True
            timer.callback()
            fired += 1
        self.now = target
        return fired


def clamp_wpm(wpm: int) -> int:
    return max(MIN_WPM, min(MAX_WPM, int(wpm)))


def tick_interval(wpm: int) -> float:
    """Seconds between word advances at ``wpm``."""
    return 60.0 / clamp_wpm(wpm)


@dataclass(frozen=True, slots=True)
class PlaybackState:
    chapter_index: int
    word_index: int
    is_playing: bool
    wpm: int
    word_count: int
    reason: str

    @property
    def position(self) -> Position:
        return Position(self.chapter_index, self.word_index)

    def as_payload(self) -> dict[str, object]:
        return {
            "chapterIndex": self.chapter_index,
            "wordIndex": self.word_index,
            "isPlaying": self.is_playing,
            "wpm": self.wpm,
            "totalWords": self.word_count,
            "reason": self.reason,
        }


PositionListener = Callable[[PlaybackState], None]


class PlaybackEngine:
    """
    Paused/Playing state machine over a book's chapters.

    Exactly one timer handle is owned at a time: either the next word tick or
    the settle delay before an automatic chapter change. Every re-arm cancels
    the previous handle first, and each armed callback carries a generation
    number so a timer that fired after being cancelled does nothing.
    """

    def __init__(
        self,
        chapters: Sequence["Chapter"],
        *,
        scheduler: Scheduler | None = None,
        wpm: int = DEFAULT_WPM,
        position: Position | None = None,
        chapter_settle_delay: float = DEFAULT_CHAPTER_SETTLE_DELAY,
    ) -> None:
        self.chapters = list(chapters)
        self.scheduler: Scheduler = scheduler if scheduler is not None else ThreadingScheduler()
        self.chapter_settle_delay = max(0.0, float(chapter_settle_delay))
        self._lock = threading.RLock()
        self._wpm = clamp_wpm(wpm)
        self._playing = False
        self._chapter_index = 0
        self._word_index = 0
        self._timer: TimerHandle | None = None
        self._timer_kind: str | None = None
        self._generation = 0
        self._closed = False
        self._listeners: list[PositionListener] = []
        if position is not None and self.chapters:
            self._chapter_index = min(max(position.chapter_index, 0), len(self.chapters) - 1)
            self._word_index = self._clamp_word(position.word_index)

    # -- read-only views -------------------------------------------------

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def wpm(self) -> int:
        return self._wpm

    @property
    def chapter_index(self) -> int:
        return self._chapter_index

    @property
    def word_index(self) -> int:
        return self._word_index

    @property
    def position(self) -> Position:
        with self._lock:
            return Position(self._chapter_index, self._word_index)

    @property
    def current_chapter(self) -> "Chapter | None":
        if not self.chapters:
            return None
        return self.chapters[self._chapter_index]

    @property
    def words(self) -> Sequence[str]:
        chapter = self.current_chapter
        return chapter.words if chapter is not None else ()

    @property
    def current_word(self) -> str:
        words = self.words
        if 0 <= self._word_index < len(words):
            return words[self._word_index]
        return ""

    @property
    def interval(self) -> float:
        return tick_interval(self._wpm)

    @property
    def has_active_timer(self) -> bool:
        return self._timer is not None

    @property
    def chapter_progress(self) -> float:
        count = len(self.words)
        if count <= 0:
            return 0.0
        return self._word_index / count * 100.0

    @property
    def elapsed_seconds(self) -> float:
        return calculate_reading_time(self._word_index, self._wpm)

    @property
    def total_seconds(self) -> float:
        return calculate_reading_time(len(self.words), self._wpm)

    def orp_parts(self) -> tuple[str, str, str]:
        return split_at_orp(self.current_word)

    def snapshot(self, reason: str = "snapshot") -> PlaybackState:
        with self._lock:
            return self._snapshot(reason)

    # -- subscriptions ---------------------------------------------------

    def on_position_change(self, listener: PositionListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    # -- commands --------------------------------------------------------

    def play(self) -> bool:
        with self._lock:
            if self._closed or self._playing or not self.words:
                return False
            self._playing = True
            self._arm_tick()
            state = self._snapshot("play")
        self._emit(state)
        return True

    def pause(self) -> bool:
        with self._lock:
            if not self._playing:
                return False
            self._playing = False
            self._cancel_timer()
            state = self._snapshot("pause")
        self._emit(state)
        return True

    def toggle(self) -> bool:
        """Flip play/pause; returns the resulting ``is_playing``."""
        with self._lock:
            if self._playing:
                self.pause()
            else:
                self.play()
            return self._playing

    def seek(self, index: int) -> int:
        with self._lock:
            if self._closed:
                return self._word_index
            self._word_index = self._clamp_word(index)
            if self._playing:
                # Restart the interval from the new word, dropping any pending chapter change.
                self._arm_tick()
            state = self._snapshot("seek")
        self._emit(state)
        return state.word_index

    def skip(self, delta: int) -> int:
        return self.seek(self._word_index + delta)

    def set_speed(self, wpm: int) -> int:
        with self._lock:
            clamped = clamp_wpm(wpm)
            if clamped == self._wpm:
                return clamped
            self._wpm = clamped
            if self._playing and self._timer_kind == "tick":
                self._arm_tick()
            state = self._snapshot("speed")
        self._emit(state)
        return clamped

    def speed_up(self) -> int:
        return self.set_speed(self._wpm + WPM_STEP)

    def slow_down(self) -> int:
        return self.set_speed(self._wpm - WPM_STEP)

    def go_to_chapter(self, index: int) -> bool:
        with self._lock:
            if self._closed or not 0 <= index < len(self.chapters):
                return False
            self._cancel_timer()
            self._playing = False
            self._chapter_index = index
            self._word_index = 0
            state = self._snapshot("chapter")
        self._emit(state)
        return True

    def next_chapter(self) -> bool:
        return self.go_to_chapter(self._chapter_index + 1)

    def prev_chapter(self) -> bool:
        return self.go_to_chapter(self._chapter_index - 1)

    def close(self) -> None:
        """Stop ticking for good. Safe to call repeatedly."""
        with self._lock:
            self._cancel_timer()
            self._playing = False
            self._closed = True
            self._listeners.clear()

    # -- internals -------------------------------------------------------

    def _clamp_word(self, index: int) -> int:
        count = len(self.words)
        if count <= 0:
            return 0
        return min(max(int(index), 0), count - 1)

    def _snapshot(self, reason: str) -> PlaybackState:
        return PlaybackState(
            chapter_index=self._chapter_index,
            word_index=self._word_index,
            is_playing=self._playing,
            wpm=self._wpm,
            word_count=len(self.words),
            reason=reason,
        )

    def _cancel_timer(self) -> None:
        self._generation += 1
        timer = self._timer
        self._timer = None
        self._timer_kind = None
        if timer is not None:
            timer.cancel()

    def _arm(self, kind: str, delay: float, handler: Callable[[int], None]) -> None:
        self._cancel_timer()
        generation = self._generation
        self._timer_kind = kind
        self._timer = self.scheduler.call_later(delay, lambda: handler(generation))

    def _arm_tick(self) -> None:
        self._arm("tick", self.interval, self._on_tick)

    def _on_tick(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or not self._playing:
                return
            self._timer = None
            self._timer_kind = None
            if self._word_index < len(self.words) - 1:
                self._word_index += 1
                self._arm_tick()
                state = self._snapshot("tick")
            elif self._chapter_index < len(self.chapters) - 1:
                if self.chapter_settle_delay > 0:
                    self._arm("settle", self.chapter_settle_delay, self._on_settled)
                    return
                state = self._advance_chapter()
            else:
                self._playing = False
                state = self._snapshot("finished")
        self._emit(state)

    def _on_settled(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or not self._playing:
                return
            self._timer = None
            self._timer_kind = None
            state = self._advance_chapter()
        self._emit(state)

    def _advance_chapter(self) -> PlaybackState:
        self._chapter_index += 1
        self._word_index = 0
        if self.words:
            self._arm_tick()
        else:
            self._playing = False
        return self._snapshot("auto-advance")

    def _emit(self, state: PlaybackState) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("Position listener failed")
