from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Dict, List, Optional

from sqlalchemy.orm import Session, selectinload

from huddle.models.meeting import Meeting, MeetingParticipant, MeetingSession
from huddle.models.user import User
from huddle.schemas.meeting import (
    ActiveParticipantSummary,
    MeetingReport,
    MeetingSummary,
    ParticipantReport,
    SessionReport,
)
from huddle.services.errors import NotFound
from huddle.utils.identifiers import user_identity

logger = logging.getLogger(__name__)


def _group_key(participant: MeetingParticipant) -> str:
    # Rows from before identity keys were normalised still merge by user id.
    if participant.user_id:
        return user_identity(participant.user_id)
    return participant.identity_key


class ReportAggregator:
    """Read-only view of a meeting's attendance.

    Participant rows that describe the same human (same user id, or the same
    guest identity) are merged into a single report line; this never writes.
    """

    def __init__(self, db: Session):
        self.db = db

    def _load_participants(self, meeting_id: str) -> List[MeetingParticipant]:
        return (
            self.db.query(MeetingParticipant)
            .options(selectinload(MeetingParticipant.sessions))
            .filter(MeetingParticipant.meeting_id == meeting_id)
            .order_by(MeetingParticipant.first_joined_at.asc(), MeetingParticipant.id.asc())
            .all()
        )

    def _avatars(self, participants: List[MeetingParticipant]) -> Dict[str, Optional[str]]:
        user_ids = {p.user_id for p in participants if p.user_id}
        if not user_ids:
            return {}
        rows = (
            self.db.query(User.user_id, User.avatar_url)
            .filter(User.user_id.in_(user_ids))
            .all()
        )
        return {user_id: avatar for user_id, avatar in rows}

    def _merge(
        self,
        participants: List[MeetingParticipant],
        avatars: Dict[str, Optional[str]],
    ) -> List[ParticipantReport]:
        groups: "OrderedDict[str, List[MeetingParticipant]]" = OrderedDict()
        for participant in participants:
            groups.setdefault(_group_key(participant), []).append(participant)

        reports: List[ParticipantReport] = []
        for rows in groups.values():
            primary = rows[0]
            sessions: List[MeetingSession] = sorted(
                (s for row in rows for s in row.sessions),
                key=lambda s: (s.join_time, s.id),
            )
            is_active = any(s.is_open for s in sessions)
            left_times = [row.last_left_at for row in rows if row.last_left_at]
            reports.append(
                ParticipantReport(
                    participant_id=primary.id,
                    identity=primary.identity_key,
                    name=rows[-1].display_name or primary.guest_name or "",
                    user_id=primary.user_id,
                    avatar_url=avatars.get(primary.user_id) if primary.user_id else None,
                    is_guest=primary.is_guest,
                    is_active=is_active,
                    first_joined_at=min(row.first_joined_at for row in rows),
                    last_left_at=None if is_active or not left_times else max(left_times),
                    total_duration_seconds=sum(s.duration_seconds for s in sessions),
                    recorded_duration_seconds=sum(
                        row.total_duration_seconds or 0.0 for row in rows
                    ),
                    sessions=[
                        SessionReport(
                            session_id=s.id,
                            join_time=s.join_time,
                            leave_time=s.leave_time,
                            duration_seconds=s.duration_seconds,
                            close_reason=s.close_reason,
                        )
                        for s in sessions
                    ],
                )
            )
        return reports

    def build_report(self, meeting_id: str) -> MeetingReport:
        meeting = self.db.get(Meeting, meeting_id)
        if meeting is None:
            raise NotFound("Meeting not found")
        participants = self._load_participants(meeting_id)
        merged = self._merge(participants, self._avatars(participants))
        for line in merged:
            drift = abs(line.total_duration_seconds - line.recorded_duration_seconds)
            if drift > 1.0:
                logger.warning(
                    "Duration drift of %.1fs for %s in meeting %s",
                    drift,
                    line.identity,
                    meeting_id,
                )
        return MeetingReport(
            id=meeting.id,
            workspace_id=meeting.workspace_id,
            title=meeting.title,
            join_code=meeting.join_code,
            status=meeting.status,
            hard_ended=bool(meeting.hard_ended),
            start_time=meeting.start_time,
            end_time=meeting.end_time,
            started_at=meeting.started_at,
            ended_at=meeting.ended_at,
            created_by=meeting.created_by_user_id,
            active_participant_count=sum(1 for line in merged if line.is_active),
            participants=merged,
        )

    def list_workspace_meetings(self, workspace_id: str) -> List[MeetingSummary]:
        meetings = (
            self.db.query(Meeting)
            .filter(Meeting.workspace_id == workspace_id)
            .order_by(Meeting.created_at.desc(), Meeting.id.desc())
            .all()
        )
        summaries: List[MeetingSummary] = []
        for meeting in meetings:
            participants = self._load_participants(meeting.id)
            merged = self._merge(participants, self._avatars(participants))
            summaries.append(
                MeetingSummary(
                    id=meeting.id,
                    title=meeting.title,
                    join_code=meeting.join_code,
                    status=meeting.status,
                    start_time=meeting.start_time,
                    end_time=meeting.end_time,
                    started_at=meeting.started_at,
                    ended_at=meeting.ended_at,
                    created_by=meeting.created_by_user_id,
                    participant_count=len(merged),
                    active_participants=[
                        ActiveParticipantSummary(
                            participant_id=line.participant_id,
                            name=line.name,
                            avatar_url=line.avatar_url,
                        )
                        for line in merged
                        if line.is_active
                    ],
                )
            )
        return summaries
