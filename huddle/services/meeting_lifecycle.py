from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from huddle.models.meeting import Meeting, MeetingStatus
from huddle.services.errors import MeetingEndedError

logger = logging.getLogger(__name__)


class MeetingLifecycle:
    """Scheduled -> Live -> Ended state machine for a single meeting row.

    Transitions are derived from session activity and are only applied by the
    session tracker or the host-end path, always under the meeting lock that
    guarded the session mutation. A soft end (room emptied) re-opens on the
    next join; a hard end (host command) is permanent.
    """

    def __init__(self, db: Session):
        self.db = db

    def assert_joinable(self, meeting: Meeting) -> None:
        if meeting.hard_ended:
            raise MeetingEndedError("This meeting has been ended by the host.")

    def on_session_opened(self, meeting: Meeting, at: datetime) -> None:
        self.assert_joinable(meeting)
        if meeting.status == MeetingStatus.LIVE.value:
            return
        previous = meeting.status
        meeting.status = MeetingStatus.LIVE.value
        if meeting.started_at is None:
            meeting.started_at = at
        # Re-opening a soft-ended meeting: it is not over after all.
        meeting.ended_at = None
        logger.info(
            "Meeting %s transitioned %s -> %s", meeting.id, previous, meeting.status
        )

    def on_session_closed(
        self, meeting: Meeting, at: datetime, active_count: int
    ) -> None:
        if meeting.hard_ended or meeting.status != MeetingStatus.LIVE.value:
            return
        if active_count > 0:
            return
        meeting.status = MeetingStatus.ENDED.value
        meeting.ended_at = at
        logger.info("Meeting %s emptied; soft-ended at %s", meeting.id, at.isoformat())

    def mark_hard_ended(self, meeting: Meeting, at: datetime) -> bool:
        """Flag the meeting as permanently ended. Returns False if it already was."""
        if meeting.hard_ended:
            return False
        previous = meeting.status
        meeting.hard_ended = True
        meeting.status = MeetingStatus.ENDED.value
        if previous != MeetingStatus.ENDED.value or meeting.ended_at is None:
            meeting.ended_at = at
        logger.info(
            "Meeting %s hard-ended by host (was %s)", meeting.id, previous
        )
        return True
