from __future__ import annotations

import logging
from typing import Optional

from huddle.config.loader import get_capacity_settings
from huddle.services.errors import CapacityExceeded
from huddle.services.session_tracker import SessionTracker

logger = logging.getLogger(__name__)


class CapacityGuard:
    """Rejects a join when the room already holds the maximum number of
    distinct active participants.

    Must run under the same meeting lock as the SessionTracker.join that
    follows it, otherwise two joins can both pass at ceiling - 1.
    """

    def __init__(self, tracker: SessionTracker, limit: Optional[int] = None):
        self.tracker = tracker
        if limit is None:
            limit = get_capacity_settings()["max_active_participants"]
        self.limit = limit

    def check_capacity(
        self, meeting_id: str, identity: Optional[str] = None
    ) -> None:
        if identity is not None:
            existing = self.tracker.get_participant(meeting_id, identity)
            # Another tab of someone already in the room adds nobody.
            if existing is not None and self.tracker.is_participant_active(existing.id):
                return

        active = self.tracker.active_participant_count(meeting_id)
        if active >= self.limit:
            logger.warning(
                "Rejecting join to meeting %s: %s/%s participants active",
                meeting_id,
                active,
                self.limit,
            )
            raise CapacityExceeded(
                f"Meeting is full (max {self.limit} participants).", limit=self.limit
            )
