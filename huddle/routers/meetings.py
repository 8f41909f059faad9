import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, status

from huddle.auth.auth import get_current_user_id, get_optional_user_id
from huddle.data.meeting_manager import MeetingManager, get_meeting_manager
from huddle.schemas.meeting import (
    JoinMeetingRequest,
    JoinMeetingResponse,
    LeaveMeetingRequest,
    MeetingCreate,
    MeetingRef,
    MeetingReport,
    MeetingSummary,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/meet", tags=["meet"])

# Handlers are plain ``def`` so they run on the threadpool; the per-meeting
# locks they take are thread locks and must not be held on the event loop.


@router.post("/create", response_model=MeetingRef, status_code=status.HTTP_201_CREATED)
def create_meeting(
    payload: MeetingCreate,
    user_id: str = Depends(get_current_user_id),
    meeting_manager: MeetingManager = Depends(get_meeting_manager),
) -> MeetingRef:
    return meeting_manager.create_meeting(payload, creator_id=user_id)


@router.get("/workspace/{workspace_id}", response_model=List[MeetingSummary])
def list_workspace_meetings(
    workspace_id: str,
    user_id: str = Depends(get_current_user_id),
    meeting_manager: MeetingManager = Depends(get_meeting_manager),
) -> List[MeetingSummary]:
    return meeting_manager.list_workspace_meetings(workspace_id, viewer_id=user_id)


@router.post("/join/{join_code}", response_model=JoinMeetingResponse)
def join_meeting(
    join_code: str,
    payload: Optional[JoinMeetingRequest] = None,
    user_id: Optional[str] = Depends(get_optional_user_id),
    meeting_manager: MeetingManager = Depends(get_meeting_manager),
) -> JoinMeetingResponse:
    """
    Join by code. Authenticated callers join as themselves; anyone else must
    supply a guest name and may replay the guest_key from an earlier join.
    """
    payload = payload or JoinMeetingRequest()
    return meeting_manager.join(
        join_code,
        user_id=user_id,
        guest_name=payload.guest_name,
        guest_key=payload.guest_key,
    )


@router.post("/leave")
def leave_meeting(
    payload: LeaveMeetingRequest,
    meeting_manager: MeetingManager = Depends(get_meeting_manager),
) -> dict:
    duration = meeting_manager.leave(payload.session_id)
    return {"status": "ok", "closed": duration is not None}


@router.post("/{meeting_id}/end")
def end_meeting(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    meeting_manager: MeetingManager = Depends(get_meeting_manager),
) -> dict:
    meeting = meeting_manager.end_meeting(meeting_id, caller_id=user_id)
    return {
        "status": "ok",
        "meeting_id": meeting.id,
        "ended_at": meeting.ended_at.isoformat() if meeting.ended_at else None,
    }


@router.get("/{meeting_id}", response_model=MeetingReport)
def get_meeting_report(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    meeting_manager: MeetingManager = Depends(get_meeting_manager),
) -> MeetingReport:
    return meeting_manager.get_report(meeting_id, viewer_id=user_id)
