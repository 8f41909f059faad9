# Import models to make them accessible via huddle.models
# and ensure they are registered with SQLAlchemy's Base metadata
from .user import User, WorkspaceMember, WorkspaceRole
from .meeting import (
    Meeting,
    MeetingParticipant,
    MeetingSession,
    MeetingStatus,
    SessionCloseReason,
)

__all__ = [
    "User",
    "WorkspaceMember",
    "WorkspaceRole",
    "Meeting",
    "MeetingParticipant",
    "MeetingSession",
    "MeetingStatus",
    "SessionCloseReason",
]
