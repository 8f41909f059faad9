import logging
import logging.config
import os
from pathlib import Path
from typing import Optional

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _rotating(path: Path, level: str) -> dict:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": "default",
        "filename": str(path),
        "maxBytes": int(os.getenv("LOG_MAX_BYTES", str(5 * 1024 * 1024))),
        "backupCount": int(os.getenv("LOG_BACKUP_COUNT", "3")),
        "level": level,
        "encoding": "utf8",
    }


def setup_logging(log_dir: Optional[str] = None) -> None:
    """Send ``huddle.*`` and uvicorn records to the console and to
    ``app.log`` / ``error.log`` under HUDDLE_LOG_DIR (default ``logs``)."""
    directory = Path(log_dir or os.getenv("HUDDLE_LOG_DIR", "logs"))
    directory.mkdir(parents=True, exist_ok=True)
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    handlers = ["console", "file_app", "file_error"]

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": _FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level,
                },
                "file_app": _rotating(directory / "app.log", "INFO"),
                "file_error": _rotating(directory / "error.log", "ERROR"),
            },
            "loggers": {
                "huddle": {"handlers": handlers, "level": level, "propagate": False},
                "uvicorn": {"handlers": handlers, "level": "INFO", "propagate": False},
            },
        }
    )
    logging.getLogger("huddle").info("Logging configured in %s", directory)
