from __future__ import annotations

__all__ = [
    "calculate_orp",
    "split_at_orp",
    "calculate_reading_time",
    "format_time",
]

# (max word length, ORP index); longer words fall through to _ORP_LONG_WORD.
_ORP_BANDS: tuple[tuple[int, int], ...] = (
    (1, 0),
    (5, 1),
    (9, 2),
    (13, 3),
)
_ORP_LONG_WORD = 4


def calculate_orp(word: str) -> int:
    """
    Return the 0-based optimal recognition point for ``word``.

    The fixation point sits slightly left of centre and depends only on the
    word length, so punctuation counts toward the length.
    """
    length = len(word)
    for max_length, index in _ORP_BANDS:
        if length <= max_length:
            return index
    return _ORP_LONG_WORD


def split_at_orp(word: str) -> tuple[str, str, str]:
    """Split ``word`` into the text before, at, and after its ORP character."""
    if not word:
        return "", "", ""
    index = calculate_orp(word)
    return word[:index], word[index], word[index + 1 :]


def calculate_reading_time(word_count: int, wpm: int) -> float:
    """Seconds needed to read ``word_count`` words at ``wpm``."""
    if wpm <= 0 or word_count <= 0:
        return 0.0
    return word_count / wpm * 60.0


def format_time(seconds: float) -> str:
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes}:{secs:02d}"
