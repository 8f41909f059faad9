from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

PARTICIPANT_LEFT = "participant_left"
ROOM_FINISHED = "room_finished"


class ProviderRoom(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)


class ProviderParticipant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    identity: str = Field(..., min_length=1)
    name: Optional[str] = None


class ProviderWebhookEvent(BaseModel):
    """A media-provider webhook payload that has passed signature verification."""

    model_config = ConfigDict(extra="ignore")

    event: str = Field(..., min_length=1)
    id: Optional[str] = None
    room: Optional[ProviderRoom] = None
    participant: Optional[ProviderParticipant] = None
    created_at: Optional[int] = Field(default=None, alias="createdAt")
