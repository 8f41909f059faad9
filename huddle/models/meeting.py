from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from huddle.database import Base
from huddle.models.types import UTCDateTime
from huddle.utils.clock import utcnow


def _uuid() -> str:
    return str(uuid4())


class MeetingStatus(str, Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    ENDED = "ended"


class SessionCloseReason(str, Enum):
    LEAVE = "leave"
    WEBHOOK = "webhook"
    HOST_END = "host_end"
    SWEEP = "sweep"


class Meeting(Base):
    __tablename__ = "meetings"

    id = Column(String(20), primary_key=True, index=True)
    workspace_id = Column(String(36), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    # Doubles as the media provider's room name.
    join_code = Column(String(32), unique=True, nullable=False, index=True)
    status = Column(String(20), default=MeetingStatus.SCHEDULED.value, nullable=False)
    hard_ended = Column(Boolean, default=False, nullable=False)
    start_time = Column(UTCDateTime, nullable=True)  # scheduled
    end_time = Column(UTCDateTime, nullable=True)  # scheduled
    started_at = Column(UTCDateTime, nullable=True)  # first session opened
    ended_at = Column(UTCDateTime, nullable=True)
    created_by_user_id = Column(String(36), nullable=False, index=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    participants = relationship(
        "MeetingParticipant",
        back_populates="meeting",
        order_by="MeetingParticipant.first_joined_at",
    )

    def __repr__(self) -> str:
        return (
            f"Meeting(id={self.id!r}, join_code={self.join_code!r}, "
            f"status={self.status!r}, hard_ended={self.hard_ended!r})"
        )


class MeetingParticipant(Base):
    __tablename__ = "meeting_participants"
    __table_args__ = (
        UniqueConstraint(
            "meeting_id", "identity_key", name="uq_meeting_participants_identity"
        ),
        CheckConstraint(
            "(user_id IS NOT NULL AND guest_name IS NULL) OR "
            "(user_id IS NULL AND guest_name IS NOT NULL)",
            name="ck_meeting_participants_user_xor_guest",
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    meeting_id = Column(
        String(20),
        ForeignKey("meetings.id"),
        nullable=False,
        index=True,
    )
    user_id = Column(String(36), nullable=True, index=True)
    guest_name = Column(String(200), nullable=True)
    # Identity handed to the media provider; webhook events refer back to it.
    identity_key = Column(String(80), nullable=False)
    display_name = Column(String(200), nullable=False)
    first_joined_at = Column(UTCDateTime, nullable=False)
    last_left_at = Column(UTCDateTime, nullable=True)
    total_duration_seconds = Column(Float, default=0.0, nullable=False)

    meeting = relationship("Meeting", back_populates="participants")
    sessions = relationship(
        "MeetingSession",
        back_populates="participant",
        order_by="MeetingSession.join_time",
    )

    @classmethod
    def create(
        cls,
        meeting_id,
        identity_key,
        display_name,
        first_joined_at,
        user_id=None,
        guest_name=None,
    ):
        if bool(user_id) == bool(guest_name):
            raise ValueError("A participant needs exactly one of user_id or guest_name.")
        return cls(
            meeting_id=meeting_id,
            user_id=user_id or None,
            guest_name=None if user_id else guest_name,
            identity_key=identity_key,
            display_name=display_name,
            first_joined_at=first_joined_at,
            total_duration_seconds=0.0,
        )

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    def __repr__(self) -> str:
        return (
            f"MeetingParticipant(id={self.id!r}, identity_key={self.identity_key!r}, "
            f"total_duration_seconds={self.total_duration_seconds!r})"
        )


class MeetingSession(Base):
    __tablename__ = "meeting_sessions"

    id = Column(String(36), primary_key=True, default=_uuid)
    participant_id = Column(
        String(36),
        ForeignKey("meeting_participants.id"),
        nullable=False,
        index=True,
    )
    join_time = Column(UTCDateTime, nullable=False, index=True)
    leave_time = Column(UTCDateTime, nullable=True, index=True)
    close_reason = Column(String(20), nullable=True)

    participant = relationship("MeetingParticipant", back_populates="sessions")

    @property
    def is_open(self) -> bool:
        return self.leave_time is None

    @property
    def duration_seconds(self) -> float:
        if self.leave_time is None:
            return 0.0
        return (self.leave_time - self.join_time).total_seconds()

    def __repr__(self) -> str:
        return (
            f"MeetingSession(id={self.id!r}, participant_id={self.participant_id!r}, "
            f"join_time={self.join_time!r}, leave_time={self.leave_time!r})"
        )
