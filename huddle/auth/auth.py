from typing import Optional
from fastapi import Depends, HTTPException, status, Request
from datetime import datetime, timedelta, UTC
from jose import JWTError, jwt
import os
import logging
import secrets

from huddle.config.loader import get_access_token_expire_minutes

logger = logging.getLogger(__name__)


# --- Configuration ---
def generate_dev_key() -> str:
    """Generate a secure default key for development environments ONLY."""
    key = secrets.token_urlsafe(48)
    logger.warning(
        "\n"
        + "*" * 80
        + "\n"
        + "DEVELOPMENT MODE: Using generated JWT secret key.\n"
        + "Tokens will not survive a restart and this is NOT secure for production.\n"
        + "Set HUDDLE_JWT_SECRET_KEY in your environment variables for production.\n"
        + "*" * 80
    )
    return key


def validate_secret_key(key: str) -> bool:
    """Validate that a JWT secret key meets minimum security requirements."""
    if not key:
        return False
    if len(key) < 32:
        logger.error("JWT secret key must be at least 32 characters long for security.")
        return False
    return True


def _is_production_mode() -> bool:
    env = os.getenv("HUDDLE_ENV", "development").strip().lower()
    return env in {"production", "prod"}


SECRET_KEY = os.getenv("HUDDLE_JWT_SECRET_KEY")
ALGORITHM = "HS256"
JWT_ISSUER = os.getenv("HUDDLE_JWT_ISSUER", "huddle")
ACCESS_TOKEN_EXPIRE_MINUTES = get_access_token_expire_minutes()

if not SECRET_KEY:
    if _is_production_mode():
        raise RuntimeError(
            "Missing HUDDLE_JWT_SECRET_KEY while HUDDLE_ENV is set to production. "
            + "Configure a strong static secret before startup."
        )
    SECRET_KEY = generate_dev_key()
elif not validate_secret_key(SECRET_KEY):
    raise RuntimeError(
        "Invalid JWT secret key configuration. "
        + "The key must be at least 32 characters long. "
        + "Update HUDDLE_JWT_SECRET_KEY in your environment variables."
    )
else:
    logger.info("JWT secret key validated and loaded from environment.")


# --- Token Utilities ---


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Creates a new JWT access token.
    The 'sub' (subject) of the token is the workspace user id.
    """
    to_encode = data.copy()
    now = datetime.now(UTC)
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "iat": now, "iss": JWT_ISSUER})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def _decode_subject(token: str) -> Optional[str]:
    payload = jwt.decode(
        token,
        SECRET_KEY,
        algorithms=[ALGORITHM],
        issuer=JWT_ISSUER,
        options={"verify_aud": False},
    )
    subject = payload.get("sub")
    return str(subject) if subject else None


async def get_token_from_request(request: Request) -> Optional[str]:
    """
    Extracts the JWT from the Authorization header, falling back to the
    'access_token' cookie. Handles the 'Bearer ' prefix in both places.
    """
    header = request.headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        return header.split(" ", 1)[1].strip() or None

    token_with_prefix = request.cookies.get("access_token")
    if not token_with_prefix:
        return None
    if token_with_prefix.startswith("Bearer "):
        return token_with_prefix.split(" ", 1)[1]
    return token_with_prefix


# --- User Retrieval Dependencies ---


async def get_current_user_id(
    token: Optional[str] = Depends(get_token_from_request),
) -> str:
    """
    Returns the user id (subject) of a valid token.
    Raises 401 if the token is missing or invalid.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials. Invalid or expired token.",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if token is None:
        logger.debug("Authentication required: no token on request.")
        raise credentials_exception
    try:
        user_id = _decode_subject(token)
    except JWTError as exc:
        logger.warning("JWTError during token decoding: %s", exc)
        raise credentials_exception
    if user_id is None:
        logger.error("Token decoding error: 'sub' claim missing in token payload.")
        raise credentials_exception
    return user_id


async def get_optional_user_id(
    token: Optional[str] = Depends(get_token_from_request),
) -> Optional[str]:
    """Like get_current_user_id, but guests (no or bad token) get None."""
    if not token:
        return None
    try:
        return _decode_subject(token)
    except JWTError:
        logger.info("Ignoring invalid token on optional-auth route.")
        return None
