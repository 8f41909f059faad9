from .meeting import (
    MeetingCreate,
    MeetingRef,
    JoinMeetingRequest,
    JoinMeetingResponse,
    LeaveMeetingRequest,
    MeetingReport,
    MeetingSummary,
    ParticipantReport,
    SessionReport,
)
from .webhook import ProviderWebhookEvent

__all__ = [
    "MeetingCreate",
    "MeetingRef",
    "JoinMeetingRequest",
    "JoinMeetingResponse",
    "LeaveMeetingRequest",
    "MeetingReport",
    "MeetingSummary",
    "ParticipantReport",
    "SessionReport",
    "ProviderWebhookEvent",
]
