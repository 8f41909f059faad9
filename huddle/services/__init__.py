"""Meeting engine: identity, capacity, sessions, lifecycle, leave reconciliation
and reporting."""

from .errors import (
    CapacityExceeded,
    Forbidden,
    MeetingEndedError,
    MeetingError,
    NotFound,
    SignatureError,
    ValidationError,
)  # noqa: F401
from .meeting_locks import meeting_locks, MeetingLockRegistry  # noqa: F401

__all__ = [
    "CapacityExceeded",
    "Forbidden",
    "MeetingEndedError",
    "MeetingError",
    "NotFound",
    "SignatureError",
    "ValidationError",
    "meeting_locks",
    "MeetingLockRegistry",
]
