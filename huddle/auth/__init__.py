from .auth import (
    create_access_token,
    get_token_from_request,
    get_current_user_id,
    get_optional_user_id,
    ACCESS_TOKEN_EXPIRE_MINUTES,
    ALGORITHM,
)

__all__ = [
    "create_access_token",
    "get_token_from_request",
    "get_current_user_id",
    "get_optional_user_id",
    "ACCESS_TOKEN_EXPIRE_MINUTES",
    "ALGORITHM",
]
