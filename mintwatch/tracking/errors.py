"""Error taxonomy shared by the tracking engine and the chain poller."""

from __future__ import annotations


class TrackingError(Exception):
    """Base error for the tracking subsystem."""


class NotFoundError(TrackingError):
    """Raised when an asset record or upstream event does not exist."""

    def __init__(self, key: str, what: str = "asset") -> None:
        super().__init__(f"{what} not found: {key}")
        self.key = key
        self.what = what


class TransientError(TrackingError):
    """Network, timeout or rate-limit failure. Retried on the next cycle."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def rate_limited(self) -> bool:
        return self.status == 429


class InvalidError(TrackingError):
    """Malformed upstream payload or an operation that breaks an invariant."""


class ConflictError(TrackingError):
    """Raised by a repository when a save carries a stale version."""

    def __init__(self, asset_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"version conflict for {asset_id}: expected {expected}, found {actual}"
        )
        self.asset_id = asset_id
        self.expected = expected
        self.actual = actual


class ConfigurationError(TrackingError):
    """Startup-time configuration problem (for example a missing phase policy)."""


__all__ = [
    "TrackingError",
    "NotFoundError",
    "TransientError",
    "InvalidError",
    "ConflictError",
    "ConfigurationError",
]
