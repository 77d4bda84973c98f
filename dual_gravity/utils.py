"""
Utility Functions
=================

Common utilities used across the Dual Gravity engine.
"""

import threading
import time
from typing import Iterator, List, Optional, Sequence, TypeVar

from .config import (
    POPULARITY_BAND_LOW_BELOW,
    POPULARITY_BAND_MID_BELOW,
    DEFAULT_TRACK_POPULARITY,
)
from .errors import PipelineCancelled

T = TypeVar("T")

_BASE62 = set("0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz")


class Deadline:
    """
    Cooperative wall-clock budget threaded through every stage.

    Nothing is interrupted when the budget runs out; callers check it before
    starting expensive work and switch to their fastest fallback instead.
    The optional cancel event is the caller's cancellation token.
    """

    def __init__(
        self,
        budget_seconds: float,
        cancel_event: Optional[threading.Event] = None,
        clock=time.monotonic,
    ):
        """
        Args:
            budget_seconds: Total time allowed from now
            cancel_event: Set by the caller to abandon the request
            clock: Monotonic clock (swapped out in tests)
        """
        self._clock = clock
        self.budget = budget_seconds
        self.started_at = clock()
        self.cancel_event = cancel_event

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(float("inf"))

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def remaining(self) -> float:
        return max(0.0, self.budget - self.elapsed())

    @property
    def expired(self) -> bool:
        return self.elapsed() >= self.budget

    def near(self, reserve_seconds: float) -> bool:
        """True once less than reserve_seconds of budget is left."""
        return self.remaining() <= reserve_seconds

    def fraction_elapsed(self) -> float:
        if self.budget == float("inf"):
            return 0.0
        if self.budget <= 0:
            return 1.0
        return min(1.0, self.elapsed() / self.budget)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise PipelineCancelled("request cancelled by caller")


def is_valid_spotify_id(value: Optional[str]) -> bool:
    """
    Validate catalog ID format.

    Catalog IDs are 22 characters, base62. Database UUIDs (with dashes) fail.
    """
    if not value or len(value) != 22:
        return False
    return all(c in _BASE62 for c in value)


def normalize_name(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of at most size items."""
    for i in range(0, len(items), size):
        yield list(items[i:i + size])


def popularity_band(popularity: Optional[int]) -> str:
    if popularity is None:
        popularity = DEFAULT_TRACK_POPULARITY
    if popularity < POPULARITY_BAND_LOW_BELOW:
        return "low"
    if popularity < POPULARITY_BAND_MID_BELOW:
        return "mid"
    return "high"


def release_year(date: Optional[str]) -> Optional[int]:
    """Year from a YYYY, YYYY-MM or YYYY-MM-DD date string."""
    if not date:
        return None
    try:
        return int(date[:4])
    except (ValueError, TypeError):
        return None
