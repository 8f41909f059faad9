from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, TypeVar

from sqlalchemy.orm import Session

from huddle.database import run_unit_of_work
from huddle.models.meeting import (
    Meeting,
    MeetingParticipant,
    MeetingSession,
    SessionCloseReason,
)
from huddle.schemas.webhook import (
    PARTICIPANT_LEFT,
    ROOM_FINISHED,
    ProviderWebhookEvent,
)
from huddle.services.errors import Forbidden, NotFound
from huddle.services.meeting_lifecycle import MeetingLifecycle
from huddle.services.meeting_locks import MeetingLockRegistry, meeting_locks
from huddle.services.session_tracker import SessionTracker
from huddle.utils.clock import as_utc, utcnow
from huddle.utils.identifiers import parse_connection_identity

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LeaveReconciler:
    """Single entry point for every signal that can close a session.

    Explicit leave calls, provider webhooks, host end commands and the stale
    session sweep all land here and go through SessionTracker.close_session
    under the meeting lock, so a disconnect reported twice closes one session
    and credits one interval.
    """

    def __init__(
        self,
        db: Session,
        tracker: Optional[SessionTracker] = None,
        locks: MeetingLockRegistry = meeting_locks,
    ):
        self.db = db
        self.tracker = tracker or SessionTracker(db)
        self.lifecycle: MeetingLifecycle = self.tracker.lifecycle
        self.locks = locks

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def lock_meeting_row(self, meeting_id: str) -> Optional[Meeting]:
        """Read the meeting with ``FOR UPDATE`` inside the current unit of work."""
        return (
            self.db.query(Meeting)
            .filter(Meeting.id == meeting_id)
            .with_for_update()
            .one_or_none()
        )

    def run_locked(
        self, meeting_id: str, work: Callable[[Optional[Meeting]], T]
    ) -> T:
        """Run ``work(meeting)`` as one unit of work under the meeting lock.

        The transaction is committed or rolled back before the lock is
        released, no-op paths included. ``work`` runs again from the top if
        the database reports a lock conflict.
        """
        with self.locks.hold(meeting_id):
            return run_unit_of_work(
                self.db, lambda: work(self.lock_meeting_row(meeting_id))
            )

    def _meeting_id_for_session(self, session_id: str) -> Optional[str]:
        row = (
            self.db.query(MeetingParticipant.meeting_id)
            .join(MeetingSession, MeetingSession.participant_id == MeetingParticipant.id)
            .filter(MeetingSession.id == session_id)
            .first()
        )
        return row[0] if row else None

    # ------------------------------------------------------------------ #
    # Leave signals
    # ------------------------------------------------------------------ #

    def explicit_leave(
        self,
        session_id: str,
        at: Optional[datetime] = None,
        reason: SessionCloseReason = SessionCloseReason.LEAVE,
    ) -> Optional[float]:
        """Close the exact session handed out at join time.

        Unknown or already-closed sessions are a no-op returning None.
        """
        meeting_id = self._meeting_id_for_session(session_id)
        if meeting_id is None:
            logger.info("Leave for unknown session %s ignored.", session_id)
            return None

        def close(_meeting: Optional[Meeting]) -> Optional[float]:
            session = self.db.get(MeetingSession, session_id)
            if session is None:
                return None
            duration = self.tracker.close_session(
                session.participant,
                at=at,
                session_id=session_id,
                reason=reason,
            )
            if duration is None:
                logger.info(
                    "Duplicate leave for session %s (already closed).", session_id
                )
            return duration

        return self.run_locked(meeting_id, close)

    def participant_leave(
        self,
        meeting_id: str,
        identity: str,
        at: Optional[datetime] = None,
        session_id: Optional[str] = None,
        reason: SessionCloseReason = SessionCloseReason.LEAVE,
    ) -> Optional[float]:
        """Leave signal that only names the participant; closes the oldest
        open session unless a session id is known."""

        def close(meeting: Optional[Meeting]) -> Optional[float]:
            if meeting is None:
                return None
            participant = self.tracker.get_participant(meeting_id, identity)
            if participant is None:
                logger.info(
                    "Leave for unknown participant %s in meeting %s ignored.",
                    identity,
                    meeting_id,
                )
                return None
            duration = self.tracker.close_session(
                participant, at=at, session_id=session_id, reason=reason
            )
            if duration is None:
                logger.info(
                    "Duplicate leave for %s in meeting %s (nothing open).",
                    identity,
                    meeting_id,
                )
            return duration

        return self.run_locked(meeting_id, close)

    def provider_left(
        self, event: ProviderWebhookEvent, at: Optional[datetime] = None
    ) -> Optional[float]:
        if event.room is None or event.participant is None:
            logger.info("participant_left event without room or participant ignored.")
            return None
        meeting = self._meeting_by_room(event.room.name)
        if meeting is None:
            logger.info("participant_left for unknown room %s ignored.", event.room.name)
            return None
        identity, session_id = parse_connection_identity(event.participant.identity)
        return self.participant_leave(
            meeting.id,
            identity,
            at=at,
            session_id=session_id,
            reason=SessionCloseReason.WEBHOOK,
        )

    def provider_room_finished(
        self, event: ProviderWebhookEvent, at: Optional[datetime] = None
    ) -> int:
        """The provider tore the room down: everybody is gone, but the host
        did not end the meeting, so this is a soft end."""
        if event.room is None:
            return 0
        meeting = self._meeting_by_room(event.room.name)
        if meeting is None:
            logger.info("room_finished for unknown room %s ignored.", event.room.name)
            return 0
        now = as_utc(at) or utcnow()

        def close_all(locked: Optional[Meeting]) -> int:
            if locked is None:
                return 0
            return self.tracker.close_all_open(locked, now, SessionCloseReason.WEBHOOK)

        return self.run_locked(meeting.id, close_all)

    def handle_provider_event(
        self, event: ProviderWebhookEvent, at: Optional[datetime] = None
    ) -> None:
        if event.event == PARTICIPANT_LEFT:
            self.provider_left(event, at=at)
        elif event.event == ROOM_FINISHED:
            self.provider_room_finished(event, at=at)
        else:
            logger.debug("Ignoring provider event %s", event.event)

    def host_end(
        self, meeting_id: str, caller_id: Optional[str], at: Optional[datetime] = None
    ) -> Meeting:
        """Hard-end the meeting: close every open session at one instant and
        block further joins. Only the meeting creator may do this."""
        now = as_utc(at) or utcnow()

        def end(meeting: Optional[Meeting]) -> Meeting:
            if meeting is None:
                raise NotFound("Meeting not found")
            if not caller_id or meeting.created_by_user_id != caller_id:
                raise Forbidden("Only the meeting creator can end this meeting.")
            if not self.lifecycle.mark_hard_ended(meeting, now):
                return meeting
            # Flag first so the per-close soft-end check stays out of the way.
            closed = self.tracker.close_all_open(
                meeting, now, SessionCloseReason.HOST_END
            )
            logger.info(
                "Host %s ended meeting %s; closed %s open session(s).",
                caller_id,
                meeting_id,
                closed,
            )
            return meeting

        return self.run_locked(meeting_id, end)

    def _meeting_by_room(self, room_name: str) -> Optional[Meeting]:
        return (
            self.db.query(Meeting)
            .filter(Meeting.join_code == room_name)
            .one_or_none()
        )

    def expire_session(
        self, session_id: str, at: Optional[datetime] = None
    ) -> Optional[float]:
        """Force-close a session the provider never reported as gone."""
        return self.explicit_leave(session_id, at=at, reason=SessionCloseReason.SWEEP)
