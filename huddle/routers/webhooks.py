import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from huddle.data.meeting_manager import MeetingManager, get_meeting_manager
from huddle.services.errors import SignatureError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhook", tags=["webhooks"])


async def _raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/media")
def media_provider_webhook(
    body: bytes = Depends(_raw_body),
    authorization: Optional[str] = Header(default=None),
    meeting_manager: MeetingManager = Depends(get_meeting_manager),
) -> dict:
    """
    Receive a media-provider event. Untrusted deliveries get a 401 so the
    provider surfaces the misconfiguration; anything that fails after
    verification is logged and acknowledged, since a retry cannot fix it.
    """
    try:
        event = meeting_manager.media_provider.verify_webhook(body, authorization)
    except SignatureError:
        logger.warning("Rejected media webhook with an invalid signature.")
        raise
    except ValidationError as exc:
        logger.warning("Dropped unparseable media webhook: %s", exc.message)
        return {"status": "ignored"}

    try:
        meeting_manager.handle_provider_event(event)
    except Exception:
        logger.exception(
            "Failed to process media webhook %s (%s)", event.id, event.event
        )
        return {"status": "error"}
    return {"status": "ok"}
