import re
import secrets
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from huddle.models.meeting import Meeting

MEETING_ID_PREFIX = "MTG"
MEETING_ID_SUFFIX_WIDTH = 4

JOIN_CODE_LENGTH = 10

USER_IDENTITY_PREFIX = "user"
GUEST_IDENTITY_PREFIX = "guest"
GUEST_TOKEN_BYTES = 12
_GUEST_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{24}$")


def _format_base36(number: int) -> str:
    if number < 0:
        raise ValueError("number must be non-negative")
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    if number == 0:
        return "0"
    result = []
    while number:
        number, remainder = divmod(number, 36)
        result.append(digits[remainder])
    return "".join(reversed(result))


def _next_meeting_sequence(db: Session, date_prefix: str) -> int:
    like_pattern = f"{date_prefix}-%"
    latest: Optional[str] = (
        db.query(Meeting.id)
        .filter(Meeting.id.like(like_pattern))
        .order_by(Meeting.id.desc())
        .limit(1)
        .scalar()
    )
    if not latest:
        return 1
    try:
        suffix = latest.split("-")[-1]
        return int(suffix, 36) + 1
    except (ValueError, IndexError):
        return 1


def generate_meeting_id(db: Session, created_at: Optional[datetime] = None) -> str:
    """
    Construct a unique meeting identifier with the format MTGYYYYMMDD-XXXX
    where the suffix is a zero-padded base36 sequence scoped to the given day.
    """
    timestamp = (created_at or datetime.now(timezone.utc)).astimezone(timezone.utc)
    date_prefix = f"{MEETING_ID_PREFIX}{timestamp:%Y%m%d}"
    sequence = _next_meeting_sequence(db, date_prefix)
    suffix = _format_base36(sequence).upper().rjust(MEETING_ID_SUFFIX_WIDTH, "0")
    return f"{date_prefix}-{suffix}"


def generate_join_code(db: Session) -> str:
    """Return a short lowercase hex code not yet used by any meeting."""
    while True:
        candidate = secrets.token_hex(JOIN_CODE_LENGTH // 2)
        exists = db.query(Meeting.id).filter(Meeting.join_code == candidate).first()
        if not exists:
            return candidate


def generate_guest_token() -> str:
    return secrets.token_hex(GUEST_TOKEN_BYTES)


def is_guest_token(value: Optional[str]) -> bool:
    return bool(value) and bool(_GUEST_TOKEN_PATTERN.match(value))


def user_identity(user_id: str) -> str:
    return f"{USER_IDENTITY_PREFIX}:{user_id}"


def guest_identity(token: str) -> str:
    return f"{GUEST_IDENTITY_PREFIX}:{token}"


def guest_token_from_key(value: Optional[str]) -> str:
    """Accept a replay key as either ``<token>`` or ``guest:<token>``."""
    token = (value or "").strip().lower()
    prefix = f"{GUEST_IDENTITY_PREFIX}:"
    if token.startswith(prefix):
        token = token[len(prefix):]
    return token


CONNECTION_SEPARATOR = "#"


def connection_identity(identity_key: str, session_id: str) -> str:
    """Provider-facing identity for one connection (tab) of a participant."""
    return f"{identity_key}{CONNECTION_SEPARATOR}{session_id}"


def parse_connection_identity(value: str) -> Tuple[str, Optional[str]]:
    """Split a provider identity into (identity_key, session_id or None)."""
    identity_key, sep, session_id = (value or "").strip().partition(
        CONNECTION_SEPARATOR
    )
    if not sep or not session_id:
        return identity_key, None
    return identity_key, session_id
