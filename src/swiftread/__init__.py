from .core import BookUnreadable, Chapter, NoReadableContent, OpenedBook, extract_chapters, open_book
from .library import Book, BookNotFound, Library
from .orp import calculate_orp, calculate_reading_time, format_time, split_at_orp
from .playback import ManualScheduler, PlaybackEngine, PlaybackState, ThreadingScheduler
from .progress import Position, Progress, ProgressSaver, compute_percentage, restore_position
from .session import ReadingSession, open_session
from .tokens import normalize_text, tokenize_text

__all__ = [
    "Chapter",
    "OpenedBook",
    "open_book",
    "extract_chapters",
    "BookUnreadable",
    "NoReadableContent",
    "tokenize_text",
    "normalize_text",
    "calculate_orp",
    "split_at_orp",
    "calculate_reading_time",
    "format_time",
    "PlaybackEngine",
    "PlaybackState",
    "ThreadingScheduler",
    "ManualScheduler",
    "Position",
    "Progress",
    "ProgressSaver",
    "compute_percentage",
    "restore_position",
    "Book",
    "BookNotFound",
    "Library",
    "ReadingSession",
    "open_session",
]
