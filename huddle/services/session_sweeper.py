from __future__ import annotations

import asyncio
import logging
from typing import Optional

from sqlalchemy.orm import Session

from huddle.database import SessionLocal

logger = logging.getLogger(__name__)

_sweeper_task: Optional[asyncio.Task] = None


def sweep_once(ttl_seconds: int, session_factory=SessionLocal) -> int:
    # Imported lazily: the manager pulls in the media provider singleton.
    from huddle.data.meeting_manager import MeetingManager

    db: Session = session_factory()
    try:
        return MeetingManager(db=db).sweep_stale_sessions(ttl_seconds)
    finally:
        db.close()


async def _run_sweeper(ttl_seconds: int, interval_seconds: int, session_factory) -> None:
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await asyncio.to_thread(sweep_once, ttl_seconds, session_factory)
            except Exception:
                logger.exception("Stale session sweep failed; retrying next interval.")
    except asyncio.CancelledError:
        return


def start_session_sweeper(
    ttl_seconds: int, interval_seconds: int, session_factory=SessionLocal
) -> None:
    global _sweeper_task
    stop_session_sweeper()
    _sweeper_task = asyncio.create_task(
        _run_sweeper(ttl_seconds, interval_seconds, session_factory)
    )
    logger.info(
        "Session sweeper started (ttl=%ss, interval=%ss)", ttl_seconds, interval_seconds
    )


def stop_session_sweeper() -> None:
    global _sweeper_task
    task, _sweeper_task = _sweeper_task, None
    if task:
        task.cancel()


def is_sweeper_running() -> bool:
    return _sweeper_task is not None and not _sweeper_task.done()
