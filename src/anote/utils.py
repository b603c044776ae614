"""Small helpers shared by the storage modules."""
import time

_LIKE_ESCAPES = str.maketrans({"\\": "\\\\", "%": "\\%", "_": "\\_"})


def now_ms() -> int:
    """Wall-clock time in integer milliseconds since the epoch."""
    return time.time_ns() // 1_000_000


def escape_like_pattern(value: str) -> str:
    """Make value match literally inside ``LIKE ... ESCAPE '\\'``.

    >>> escape_like_pattern("100%_done")
    '100\\\\%\\\\_done'
    """
    return value.translate(_LIKE_ESCAPES)


def clamp(value: int, low: int, high: int) -> int:
    """Clamp value into [low, high]."""
    return max(low, min(value, high))
