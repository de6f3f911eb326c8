import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_db
from .models import CallRecord
from .schemas import CallRecordOut


router = APIRouter(prefix="/api/calls", tags=["calls"])


@router.get("", response_model=list[CallRecordOut])
async def list_calls(
    participant_id: Optional[str] = Query(None, description="Requester or responder id"),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> list[CallRecordOut]:
    """List recent call records, newest first.

    With `participant_id`, only calls where that participant was the
    requester or the responder are returned.
    """
    statement = select(CallRecord)
    if participant_id:
        statement = statement.where(
            or_(
                CallRecord.requester_id == participant_id,
                CallRecord.responder_id == participant_id,
            )
        )
    result = await db.execute(
        statement.order_by(CallRecord.requested_at.desc()).limit(limit)
    )
    records = result.scalars().all()
    return [CallRecordOut.model_validate(record) for record in records]


@router.get("/{call_id}", response_model=CallRecordOut)
async def get_call(
    call_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> CallRecordOut:
    """Fetch one call record by id."""
    result = await db.execute(select(CallRecord).where(CallRecord.id == call_id))
    record = result.scalar_one_or_none()
    if record is None:
        raise HTTPException(status_code=404, detail="Call not found")
    return CallRecordOut.model_validate(record)
