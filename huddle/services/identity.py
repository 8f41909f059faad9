from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from huddle.models.meeting import MeetingParticipant
from huddle.services.errors import ValidationError
from huddle.utils.identifiers import (
    generate_guest_token,
    guest_identity,
    guest_token_from_key,
    is_guest_token,
    user_identity,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParticipantKey:
    """Stable identity of one human within one meeting."""

    identity: str
    user_id: Optional[str] = None
    guest_name: Optional[str] = None
    guest_token: Optional[str] = None

    @property
    def is_guest(self) -> bool:
        return self.user_id is None


class IdentityResolver:
    """Maps a join request onto a ParticipantKey before any row is created.

    Authenticated users are keyed by their user id. Guests are keyed by a
    replay token that the client stores locally and sends back on reconnect;
    a guest without a token (or with one this meeting has never issued)
    always gets a fresh identity.
    """

    def __init__(self, db: Session):
        self.db = db

    def resolve(
        self,
        meeting_id: str,
        authenticated_user_id: Optional[str] = None,
        guest_name: Optional[str] = None,
        guest_key: Optional[str] = None,
    ) -> ParticipantKey:
        user_id = (authenticated_user_id or "").strip()
        if user_id:
            return ParticipantKey(identity=user_identity(user_id), user_id=user_id)

        name = (guest_name or "").strip()
        if not name:
            raise ValidationError("A display name is required to join as a guest.")

        token = guest_token_from_key(guest_key)
        if token and self._is_known_guest(meeting_id, token):
            return ParticipantKey(
                identity=guest_identity(token), guest_name=name, guest_token=token
            )
        if token:
            logger.info(
                "Ignoring unknown guest replay key for meeting %s; issuing a new one.",
                meeting_id,
            )

        token = generate_guest_token()
        return ParticipantKey(
            identity=guest_identity(token), guest_name=name, guest_token=token
        )

    def _is_known_guest(self, meeting_id: str, token: str) -> bool:
        if not is_guest_token(token):
            return False
        existing = (
            self.db.query(MeetingParticipant.id)
            .filter(
                MeetingParticipant.meeting_id == meeting_id,
                MeetingParticipant.identity_key == guest_identity(token),
                MeetingParticipant.user_id.is_(None),
            )
            .first()
        )
        return existing is not None
