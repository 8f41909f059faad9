from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

_CONFIG_PATH = Path(
    os.getenv(
        "HUDDLE_CONFIG_PATH",
        str(Path(__file__).resolve().parent / "config.yaml"),
    )
)

_DEFAULT_CAPACITY = {
    "max_active_participants": 50,
}
_DEFAULT_SESSION_SWEEP = {
    "enabled": False,
    "ttl_seconds": 6 * 60 * 60,
    "interval_seconds": 300,
}
_DEFAULT_MEDIA_PROVIDER = {
    "url": "ws://localhost:7880",
    "api_key": "devkey",
    "api_secret": "",
    "token_ttl_minutes": 120,
}
_DEFAULT_ACCESS_TOKEN_EXPIRE_MINUTES = 30


def load_config() -> Dict[str, Any]:
    """Load the application config from YAML, returning an empty mapping on error."""
    try:
        with _CONFIG_PATH.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
            if isinstance(data, dict):
                return data
            logging.warning(
                "Config file %s is not a mapping; using defaults.", _CONFIG_PATH
            )
            return {}
    except FileNotFoundError:
        logging.warning(
            "Configuration file %s not found; using defaults.", _CONFIG_PATH
        )
        return {}
    except Exception as exc:  # noqa: BLE001
        logging.error("Failed to load configuration from %s: %s", _CONFIG_PATH, exc)
        return {}


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        candidate = int(value)
        return candidate if candidate > 0 else fallback
    except Exception:  # noqa: BLE001
        return fallback


def _coerce_bool(value: Any, fallback: bool) -> bool:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def get_capacity_settings() -> Dict[str, int]:
    """Return the room capacity ceiling sourced from config with safe defaults."""
    config = load_config()
    section = config.get("capacity") or {}
    defaults = dict(_DEFAULT_CAPACITY)
    return {
        "max_active_participants": _coerce_positive_int(
            section.get("max_active_participants"),
            defaults["max_active_participants"],
        ),
    }


def get_session_sweep_settings() -> Dict[str, Any]:
    """Return the stale-session sweep policy.

    The sweep is off unless explicitly enabled; sessions without any leave
    signal then stay open until a host ends the meeting.
    """
    config = load_config()
    section = config.get("session_sweep") or {}
    defaults = dict(_DEFAULT_SESSION_SWEEP)
    return {
        "enabled": _coerce_bool(section.get("enabled"), defaults["enabled"]),
        "ttl_seconds": _coerce_positive_int(
            section.get("ttl_seconds"), defaults["ttl_seconds"]
        ),
        "interval_seconds": _coerce_positive_int(
            section.get("interval_seconds"), defaults["interval_seconds"]
        ),
    }


def get_media_provider_settings() -> Dict[str, Any]:
    """
    Return media-room provider credentials.

    Priority for key and secret:
    1) HUDDLE_MEDIA_API_KEY / HUDDLE_MEDIA_API_SECRET env vars
    2) config.yaml media_provider section
    3) development defaults
    """
    config = load_config()
    section = config.get("media_provider") or {}
    defaults = dict(_DEFAULT_MEDIA_PROVIDER)

    api_key = os.getenv("HUDDLE_MEDIA_API_KEY") or section.get("api_key")
    api_secret = os.getenv("HUDDLE_MEDIA_API_SECRET") or section.get("api_secret")
    url = section.get("url")
    return {
        "url": str(url).strip() if url else defaults["url"],
        "api_key": str(api_key).strip() if api_key else defaults["api_key"],
        "api_secret": str(api_secret) if api_secret else defaults["api_secret"],
        "token_ttl_minutes": _coerce_positive_int(
            section.get("token_ttl_minutes"), defaults["token_ttl_minutes"]
        ),
    }


def get_access_token_expire_minutes() -> int:
    """Return the lifetime of workspace access tokens in minutes."""
    config = load_config()
    section = config.get("auth") or {}
    env_value = os.getenv("HUDDLE_ACCESS_TOKEN_EXPIRE_MINUTES")
    if env_value is not None:
        return _coerce_positive_int(env_value, _DEFAULT_ACCESS_TOKEN_EXPIRE_MINUTES)
    return _coerce_positive_int(
        section.get("access_token_expire_minutes"),
        _DEFAULT_ACCESS_TOKEN_EXPIRE_MINUTES,
    )


def get_join_requires_membership() -> bool:
    """Return whether only workspace members may join meetings by link."""
    config = load_config()
    section = config.get("auth") or {}
    return _coerce_bool(section.get("join_requires_membership"), False)
