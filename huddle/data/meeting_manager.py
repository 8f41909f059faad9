from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from ..config.loader import get_join_requires_membership
from ..database import get_db, run_unit_of_work
from ..models.meeting import Meeting, MeetingStatus
from ..models.user import User
from ..schemas.meeting import (
    JoinMeetingResponse,
    JoinedMeetingInfo,
    MeetingCreate,
    MeetingRef,
    MeetingReport,
    MeetingSummary,
)
from ..schemas.webhook import ProviderWebhookEvent
from ..services.capacity import CapacityGuard
from ..services.errors import Forbidden, NotFound
from ..services.identity import IdentityResolver
from ..services.leave_reconciler import LeaveReconciler
from ..services.media_provider import MediaRoomProvider, get_media_provider
from ..services.meeting_lifecycle import MeetingLifecycle
from ..services.meeting_locks import MeetingLockRegistry, meeting_locks
from ..services.membership import is_workspace_member
from ..services.report_aggregator import ReportAggregator
from ..services.session_tracker import SessionHandle, SessionTracker
from ..utils.clock import as_utc, utcnow
from ..utils.identifiers import (
    connection_identity,
    generate_join_code,
    generate_meeting_id,
)

logger = logging.getLogger(__name__)


class MeetingManager:
    """Facade over the meeting engine; owns the lock and transaction boundary.

    Every mutating call takes the per-meeting lock, re-reads the meeting row
    with ``FOR UPDATE``, performs its work through the tracker and commits
    before the lock is released.
    """

    def __init__(
        self,
        db: Session,
        media_provider: Optional[MediaRoomProvider] = None,
        capacity_limit: Optional[int] = None,
        locks: MeetingLockRegistry = meeting_locks,
    ):
        self.db = db
        self.media_provider = media_provider or get_media_provider()
        self.locks = locks
        self.lifecycle = MeetingLifecycle(db)
        self.tracker = SessionTracker(db, self.lifecycle)
        self.capacity = CapacityGuard(self.tracker, limit=capacity_limit)
        self.identity = IdentityResolver(db)
        self.reconciler = LeaveReconciler(db, tracker=self.tracker, locks=locks)
        self.reports = ReportAggregator(db)

    # ------------------------------------------------------------------ #
    # Creation
    # ------------------------------------------------------------------ #

    def create_meeting(
        self,
        payload: MeetingCreate,
        creator_id: str,
        now: Optional[datetime] = None,
    ) -> MeetingRef:
        if not is_workspace_member(self.db, payload.workspace_id, creator_id):
            raise Forbidden("You are not a member of this workspace.")
        created_at = as_utc(now) or utcnow()

        def insert() -> MeetingRef:
            # Id sequence is read and claimed in the same write transaction.
            meeting = Meeting(
                id=generate_meeting_id(self.db, created_at),
                workspace_id=payload.workspace_id,
                title=payload.title,
                join_code=generate_join_code(self.db),
                status=MeetingStatus.SCHEDULED.value,
                hard_ended=False,
                start_time=payload.start_time,
                end_time=payload.end_time,
                created_by_user_id=creator_id,
                created_at=created_at,
            )
            self.db.add(meeting)
            self.db.flush()
            return MeetingRef(id=meeting.id, join_code=meeting.join_code)

        ref = run_unit_of_work(self.db, insert)
        logger.info(
            "Meeting %s created in workspace %s by %s",
            ref.id,
            payload.workspace_id,
            creator_id,
        )
        return ref

    # ------------------------------------------------------------------ #
    # Join / leave / end
    # ------------------------------------------------------------------ #

    def _display_name(self, user_id: Optional[str], guest_name: Optional[str]) -> str:
        if user_id:
            user = self.db.get(User, user_id)
            if user is not None and user.display_name:
                return user.display_name
            return user_id
        return (guest_name or "").strip()

    def join(
        self,
        join_code: str,
        user_id: Optional[str] = None,
        guest_name: Optional[str] = None,
        guest_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> JoinMeetingResponse:
        meeting = (
            self.db.query(Meeting).filter(Meeting.join_code == join_code).one_or_none()
        )
        if meeting is None:
            raise NotFound("Meeting not found")
        if (
            user_id
            and get_join_requires_membership()
            and not is_workspace_member(self.db, meeting.workspace_id, user_id)
        ):
            raise Forbidden("You are not a member of this workspace.")

        key = self.identity.resolve(
            meeting.id,
            authenticated_user_id=user_id,
            guest_name=guest_name,
            guest_key=guest_key,
        )
        display_name = self._display_name(key.user_id, key.guest_name)
        at = as_utc(now) or utcnow()

        def admit(locked: Optional[Meeting]) -> SessionHandle:
            if locked is None:
                raise NotFound("Meeting not found")
            self.lifecycle.assert_joinable(locked)
            self.capacity.check_capacity(locked.id, key.identity)
            return self.tracker.join(locked, key, display_name, at=at)

        handle = self.reconciler.run_locked(meeting.id, admit)

        is_host = bool(key.user_id) and key.user_id == meeting.created_by_user_id
        try:
            self.media_provider.create_or_ensure_room(meeting.join_code)
            token = self.media_provider.issue_access_token(
                room_name=meeting.join_code,
                participant_identity=connection_identity(
                    handle.identity, handle.session_id
                ),
                display_name=display_name,
                is_host=is_host,
                now=at,
            )
        except Exception:
            # Release the seat taken above.
            logger.exception(
                "Media access failed for session %s in meeting %s; closing it.",
                handle.session_id,
                meeting.id,
            )
            self.reconciler.explicit_leave(handle.session_id, at=at)
            raise
        return JoinMeetingResponse(
            access_token=token,
            session_id=handle.session_id,
            participant_id=handle.participant_id,
            identity=handle.identity,
            is_host=is_host,
            guest_key=key.guest_token,
            meeting=JoinedMeetingInfo(
                id=meeting.id, title=meeting.title, status=meeting.status
            ),
        )

    def leave(self, session_id: str, now: Optional[datetime] = None) -> Optional[float]:
        return self.reconciler.explicit_leave(session_id, at=now)

    def end_meeting(
        self, meeting_id: str, caller_id: Optional[str], now: Optional[datetime] = None
    ) -> Meeting:
        return self.reconciler.host_end(meeting_id, caller_id, at=now)

    def handle_provider_event(
        self, event: ProviderWebhookEvent, now: Optional[datetime] = None
    ) -> None:
        self.reconciler.handle_provider_event(event, at=now)

    def sweep_stale_sessions(
        self, ttl_seconds: int, now: Optional[datetime] = None
    ) -> int:
        """Force-close sessions open longer than ``ttl_seconds``."""
        at = as_utc(now) or utcnow()
        cutoff = at - timedelta(seconds=ttl_seconds)
        session_ids = [s.id for s in self.tracker.stale_sessions(cutoff)]
        closed = 0
        for session_id in session_ids:
            if self.reconciler.expire_session(session_id, at=at) is not None:
                closed += 1
        if closed:
            logger.info(
                "Swept %s stale session(s) open since before %s",
                closed,
                cutoff.isoformat(),
            )
        return closed

    # ------------------------------------------------------------------ #
    # Reporting
    # ------------------------------------------------------------------ #

    def get_report(self, meeting_id: str, viewer_id: Optional[str] = None) -> MeetingReport:
        meeting = self.db.get(Meeting, meeting_id)
        if meeting is None:
            raise NotFound("Meeting not found")
        if viewer_id is not None and not is_workspace_member(
            self.db, meeting.workspace_id, viewer_id
        ):
            raise Forbidden("You are not a member of this workspace.")
        return self.reports.build_report(meeting_id)

    def list_workspace_meetings(
        self, workspace_id: str, viewer_id: Optional[str] = None
    ) -> List[MeetingSummary]:
        if viewer_id is not None and not is_workspace_member(
            self.db, workspace_id, viewer_id
        ):
            raise Forbidden("You are not a member of this workspace.")
        return self.reports.list_workspace_meetings(workspace_id)


def get_meeting_manager(db: Session = Depends(get_db)) -> MeetingManager:
    return MeetingManager(db=db)
