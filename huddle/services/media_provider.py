"""Boundary to the real-time media-room provider (LiveKit-compatible).

Rooms are named after the meeting join code. Participant access tokens and
webhook authorization headers are both HS256 JWTs keyed by the provider
API key/secret pair.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timedelta
from threading import Lock
from typing import Optional, Set
from uuid import uuid4

from jose import JWTError, jwt
from pydantic import ValidationError as PydanticValidationError

from huddle.config.loader import get_media_provider_settings
from huddle.schemas.webhook import ProviderWebhookEvent
from huddle.services.errors import SignatureError, ValidationError
from huddle.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


class MediaRoomProvider:
    def __init__(
        self,
        api_key: str,
        api_secret: str,
        url: str = "",
        token_ttl_minutes: int = 120,
    ):
        if not api_secret:
            logger.warning(
                "No media provider API secret configured; using a generated "
                "development secret. Provider webhooks cannot be verified. "
                "Set HUDDLE_MEDIA_API_SECRET for production."
            )
            api_secret = secrets.token_urlsafe(48)
            self._webhooks_verifiable = False
        else:
            self._webhooks_verifiable = True
        self.api_key = api_key
        self._api_secret = api_secret
        self.url = url
        self.token_ttl = timedelta(minutes=max(1, int(token_ttl_minutes)))
        self._rooms: Set[str] = set()
        self._rooms_lock = Lock()

    @classmethod
    def from_config(cls) -> "MediaRoomProvider":
        settings = get_media_provider_settings()
        return cls(
            api_key=settings["api_key"],
            api_secret=settings["api_secret"],
            url=settings["url"],
            token_ttl_minutes=settings["token_ttl_minutes"],
        )

    def create_or_ensure_room(self, room_name: str) -> None:
        # The provider auto-creates rooms on first token use; we only track
        # which rooms this process has already announced.
        with self._rooms_lock:
            if room_name in self._rooms:
                return
            self._rooms.add(room_name)
        logger.info("Ensured media room %s", room_name)

    def issue_access_token(
        self,
        room_name: str,
        participant_identity: str,
        display_name: Optional[str],
        is_host: bool,
        now: Optional[datetime] = None,
    ) -> str:
        issued = as_utc(now) or utcnow()
        claims = {
            "iss": self.api_key,
            "sub": participant_identity,
            "jti": str(uuid4()),
            "nbf": int(issued.timestamp()),
            "exp": int((issued + self.token_ttl).timestamp()),
            "video": {
                "room": room_name,
                "roomJoin": True,
                "canPublish": True,
                "canSubscribe": True,
                "canPublishData": True,
                "roomAdmin": bool(is_host),
            },
        }
        if display_name:
            claims["name"] = display_name
        return jwt.encode(claims, self._api_secret, algorithm=ALGORITHM)

    def sign_webhook(self, body: bytes, now: Optional[datetime] = None) -> str:
        """Build the Authorization token the provider attaches to a webhook body."""
        issued = as_utc(now) or utcnow()
        claims = {
            "iss": self.api_key,
            "nbf": int(issued.timestamp()),
            "exp": int((issued + timedelta(minutes=5)).timestamp()),
            "sha256": _body_digest(body),
        }
        return jwt.encode(claims, self._api_secret, algorithm=ALGORITHM)

    def verify_webhook(
        self, body: bytes, authorization: Optional[str]
    ) -> ProviderWebhookEvent:
        """Authenticate a webhook delivery and parse it into a typed event.

        Raises SignatureError when the delivery cannot be trusted and
        ValidationError when a trusted body is not a usable event.
        """
        if not self._webhooks_verifiable:
            raise SignatureError("Webhook verification is not configured.")
        token = (authorization or "").strip()
        if token.lower().startswith("bearer "):
            token = token.split(" ", 1)[1].strip()
        if not token:
            raise SignatureError("Missing webhook authorization.")

        try:
            claims = jwt.decode(
                token,
                self._api_secret,
                algorithms=[ALGORITHM],
                issuer=self.api_key,
                options={"verify_aud": False},
            )
        except JWTError as exc:
            raise SignatureError("Invalid webhook authorization.") from exc

        expected = _body_digest(body)
        provided = str(claims.get("sha256") or "")
        if not provided or not hmac.compare_digest(expected, provided):
            raise SignatureError("Webhook body does not match its signature.")

        try:
            payload = json.loads(body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError("Webhook body is not valid JSON.") from exc
        try:
            return ProviderWebhookEvent.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError("Webhook body is not a provider event.") from exc


def _body_digest(body: bytes) -> str:
    return base64.b64encode(hashlib.sha256(body).digest()).decode("ascii")


_provider: Optional[MediaRoomProvider] = None
_provider_lock = Lock()


def get_media_provider() -> MediaRoomProvider:
    """Process-wide provider client, built from config on first use."""
    global _provider
    with _provider_lock:
        if _provider is None:
            _provider = MediaRoomProvider.from_config()
        return _provider


def reset_media_provider(provider: Optional[MediaRoomProvider] = None) -> None:
    global _provider
    with _provider_lock:
        _provider = provider
