"""Error taxonomy shared by the clustering and verification paths."""

from __future__ import annotations


class VocLoopError(Exception):
    """Base class for engine errors."""


class InsufficientDataError(VocLoopError):
    """Raised when a unit's eligible population is below the clustering minimum.

    Batch runs report this as a skip, not a failure.
    """

    def __init__(self, count: int, minimum: int, *, unit: str = "") -> None:
        self.count = count
        self.minimum = minimum
        self.unit = unit
        prefix = f"{unit}: " if unit else ""
        super().__init__(f"{prefix}insufficient data ({count} eligible, minimum {minimum}).")


class ExternalCapabilityError(VocLoopError):
    """Raised on timeouts or malformed responses from an AI-backed step."""


class ValidationError(VocLoopError, ValueError):
    """Raised when a verification config is rejected before persistence."""


class PersistenceError(VocLoopError):
    """Raised when a store transaction fails and was rolled back."""


class NotFoundError(VocLoopError, LookupError):
    """Raised when a referenced config or group does not exist."""
