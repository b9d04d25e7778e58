# src/skyalign/core/errors.py
from __future__ import annotations

from typing import Optional


class AlignmentError(Exception):
    """Base class for every error raised by the alignment engine."""


class GeometryError(AlignmentError, ValueError):
    """Invalid or non-finite coordinates / distances. Not retried."""


class ProviderError(AlignmentError, RuntimeError):
    """Celestial-position lookup failed or timed out."""


class EmptyWindowError(AlignmentError):
    """
    No rise/set window exists for the body on that date (polar edge cases).
    Callers treat it as zero events.
    """


class ToleranceNotMet(AlignmentError):
    """No alignment within the acceptance deviation. Callers treat it as zero events."""

    def __init__(self, message: str, *, deviation: Optional[float] = None) -> None:
        super().__init__(message)
        self.deviation = deviation


class RangeTooLarge(AlignmentError, ValueError):
    """Requested date range exceeds the cap for the search mode."""

    def __init__(self, *, days: int, limit: int, mode: str) -> None:
        super().__init__(
            f"date range too large for mode={mode}: {days} days (limit={limit} days)"
        )
        self.days = days
        self.limit = limit
        self.mode = mode


class CacheCorruption(AlignmentError):
    """A stored cache payload failed to deserialize."""


class SearchCancelled(AlignmentError):
    """The caller cancelled the search or its deadline passed."""
