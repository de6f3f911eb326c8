"""Pydantic schemas for call history responses and presence reporting."""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class CallRecordOut(BaseModel):
    """Schema for call record retrieval responses."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    requester_id: str
    responder_id: Optional[str]
    requested_at: datetime
    connected_at: Optional[datetime]
    ended_at: Optional[datetime]
    outcome: str
    attempts: int
    passes: int
    summary: Optional[Any] = None


class PresenceOut(BaseModel):
    """Responders currently available, oldest-waiting first."""

    count: int = Field(..., description="Number of available responders")
    responders: list[str] = Field(default_factory=list)
