"""SQLAlchemy models for the Sightline application.

Each help request that reaches the end of its lifecycle leaves one call
record behind: who asked, who answered (if anyone), how long the match
took, and how it ended.  Records are written from the requester
controller's session summary and are read back through the calls API.
"""

import uuid
from typing import Optional

from sqlalchemy import Column, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class CallRecord(Base):
    """One finished help request.

    `outcome` is one of ``completed``, ``cancelled``, ``exhausted``,
    ``failed`` or ``disconnected``.  `attempts` counts the invitations
    sent and `passes` the rounds through the responder pool.  The
    optional `summary` keeps the bullets shown to the requester.
    """

    __tablename__ = "call_records"

    id: uuid.UUID = Column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    requester_id: str = Column(String(128), nullable=False, index=True)
    responder_id: Optional[str] = Column(String(128), nullable=True, index=True)

    requested_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    connected_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    outcome: str = Column(String(16), nullable=False)
    attempts: int = Column(Integer, nullable=False, default=0)
    passes: int = Column(Integer, nullable=False, default=1)

    summary: Optional[dict] = Column(JSONB, nullable=True)
