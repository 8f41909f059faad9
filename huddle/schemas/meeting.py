from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from huddle.models.meeting import MeetingStatus


class MeetingCreate(BaseModel):
    workspace_id: str = Field(..., min_length=1, max_length=36)
    title: str = Field(..., min_length=1, max_length=200)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, value):
        if isinstance(value, str):
            return value.strip()
        return value

    @model_validator(mode="after")
    def validate_window(self) -> "MeetingCreate":
        if self.start_time and self.end_time and self.end_time < self.start_time:
            raise ValueError("end_time must not be earlier than start_time")
        return self


class MeetingRef(BaseModel):
    id: str
    join_code: str


class JoinMeetingRequest(BaseModel):
    guest_name: Optional[str] = Field(default=None, max_length=200)
    guest_key: Optional[str] = Field(default=None, max_length=64)


class JoinedMeetingInfo(BaseModel):
    id: str
    title: str
    status: MeetingStatus


class JoinMeetingResponse(BaseModel):
    access_token: str
    session_id: str
    participant_id: str
    identity: str
    is_host: bool
    guest_key: Optional[str] = None
    meeting: JoinedMeetingInfo


class LeaveMeetingRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=36)


class SessionReport(BaseModel):
    session_id: str
    join_time: datetime
    leave_time: Optional[datetime] = None
    duration_seconds: float = 0.0
    close_reason: Optional[str] = None


class ParticipantReport(BaseModel):
    participant_id: str
    identity: str
    name: str
    user_id: Optional[str] = None
    avatar_url: Optional[str] = None
    is_guest: bool
    is_active: bool
    first_joined_at: datetime
    last_left_at: Optional[datetime] = None
    # Re-summed from closed sessions.
    total_duration_seconds: float
    # Running totals maintained at close time.
    recorded_duration_seconds: float
    sessions: List[SessionReport] = Field(default_factory=list)


class MeetingReport(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    title: str
    join_code: str
    status: MeetingStatus
    hard_ended: bool
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_by: str
    active_participant_count: int = 0
    participants: List[ParticipantReport] = Field(default_factory=list)


class ActiveParticipantSummary(BaseModel):
    participant_id: str
    name: str
    avatar_url: Optional[str] = None


class MeetingSummary(BaseModel):
    id: str
    title: str
    join_code: str
    status: MeetingStatus
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_by: str
    participant_count: int = 0
    active_participants: List[ActiveParticipantSummary] = Field(default_factory=list)
