from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from huddle.models.meeting import (
    Meeting,
    MeetingParticipant,
    MeetingSession,
    SessionCloseReason,
)
from huddle.services.identity import ParticipantKey
from huddle.services.meeting_lifecycle import MeetingLifecycle
from huddle.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionHandle:
    session_id: str
    participant_id: str
    meeting_id: str
    identity: str
    join_time: datetime


class SessionTracker:
    """Owns participant and session rows.

    Callers must hold the meeting lock (see meeting_locks) around join and
    close; the tracker itself only flushes and never commits.
    """

    def __init__(self, db: Session, lifecycle: Optional[MeetingLifecycle] = None):
        self.db = db
        self.lifecycle = lifecycle or MeetingLifecycle(db)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_participant(
        self, meeting_id: str, identity: str
    ) -> Optional[MeetingParticipant]:
        return (
            self.db.query(MeetingParticipant)
            .filter(
                MeetingParticipant.meeting_id == meeting_id,
                MeetingParticipant.identity_key == identity,
            )
            .one_or_none()
        )

    def open_sessions(self, participant_id: str) -> List[MeetingSession]:
        return (
            self.db.query(MeetingSession)
            .filter(
                MeetingSession.participant_id == participant_id,
                MeetingSession.leave_time.is_(None),
            )
            .order_by(MeetingSession.join_time.asc(), MeetingSession.id.asc())
            .all()
        )

    def is_participant_active(self, participant_id: str) -> bool:
        return bool(self.open_sessions(participant_id))

    def active_participant_count(self, meeting_id: str) -> int:
        """Distinct participants of the meeting holding at least one open session."""
        self.db.flush()
        count = (
            self.db.query(func.count(func.distinct(MeetingSession.participant_id)))
            .join(
                MeetingParticipant,
                MeetingParticipant.id == MeetingSession.participant_id,
            )
            .filter(
                MeetingParticipant.meeting_id == meeting_id,
                MeetingSession.leave_time.is_(None),
            )
            .scalar()
        )
        return int(count or 0)

    def stale_sessions(self, opened_before: datetime) -> List[MeetingSession]:
        return (
            self.db.query(MeetingSession)
            .filter(
                MeetingSession.leave_time.is_(None),
                MeetingSession.join_time < opened_before,
            )
            .order_by(MeetingSession.join_time.asc())
            .all()
        )

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #

    def join(
        self,
        meeting: Meeting,
        key: ParticipantKey,
        display_name: str,
        at: Optional[datetime] = None,
    ) -> SessionHandle:
        now = as_utc(at) or utcnow()
        self.lifecycle.assert_joinable(meeting)

        participant = self.get_participant(meeting.id, key.identity)
        if participant is None:
            participant = MeetingParticipant.create(
                meeting_id=meeting.id,
                identity_key=key.identity,
                display_name=display_name,
                first_joined_at=now,
                user_id=key.user_id,
                guest_name=key.guest_name if key.is_guest else None,
            )
            self.db.add(participant)
            self.db.flush()
            logger.info(
                "Created participant %s (%s) in meeting %s",
                participant.id,
                key.identity,
                meeting.id,
            )
        else:
            if display_name:
                participant.display_name = display_name
            if key.is_guest and key.guest_name:
                participant.guest_name = key.guest_name

        # Multiple open sessions per participant are allowed (one per tab).
        session = MeetingSession(participant_id=participant.id, join_time=now)
        self.db.add(session)
        participant.last_left_at = None
        self.db.flush()

        self.lifecycle.on_session_opened(meeting, now)
        self.db.flush()
        return SessionHandle(
            session_id=session.id,
            participant_id=participant.id,
            meeting_id=meeting.id,
            identity=key.identity,
            join_time=now,
        )

    def close_session(
        self,
        participant: MeetingParticipant,
        at: Optional[datetime] = None,
        session_id: Optional[str] = None,
        reason: SessionCloseReason = SessionCloseReason.LEAVE,
    ) -> Optional[float]:
        """Close one open session and credit its duration.

        Targets ``session_id`` when given, otherwise the oldest open session.
        Returns the credited seconds, or None when there was nothing open to
        close (a repeated leave signal).
        """
        now = as_utc(at) or utcnow()
        query = self.db.query(MeetingSession).filter(
            MeetingSession.participant_id == participant.id,
            MeetingSession.leave_time.is_(None),
        )
        if session_id is not None:
            query = query.filter(MeetingSession.id == session_id)
        session = query.order_by(
            MeetingSession.join_time.asc(), MeetingSession.id.asc()
        ).first()
        if session is None:
            logger.debug(
                "No open session to close for participant %s (session=%s); ignoring.",
                participant.id,
                session_id,
            )
            return None

        leave_time = max(now, session.join_time)
        session.leave_time = leave_time
        session.close_reason = SessionCloseReason(reason).value
        duration = (leave_time - session.join_time).total_seconds()
        participant.total_duration_seconds = (
            participant.total_duration_seconds or 0.0
        ) + duration
        self.db.flush()

        if not self.is_participant_active(participant.id):
            participant.last_left_at = leave_time

        meeting = self.db.get(Meeting, participant.meeting_id)
        self.lifecycle.on_session_closed(
            meeting, now, self.active_participant_count(meeting.id)
        )
        self.db.flush()
        logger.info(
            "Closed session %s for participant %s (%s, %.1fs)",
            session.id,
            participant.id,
            session.close_reason,
            duration,
        )
        return duration

    def close_all_open(
        self,
        meeting: Meeting,
        at: datetime,
        reason: SessionCloseReason,
    ) -> int:
        """Close every open session in the meeting at the same instant."""
        closed = 0
        participants = (
            self.db.query(MeetingParticipant)
            .filter(MeetingParticipant.meeting_id == meeting.id)
            .order_by(MeetingParticipant.first_joined_at.asc())
            .all()
        )
        for participant in participants:
            while self.close_session(participant, at=at, reason=reason) is not None:
                closed += 1
        return closed
