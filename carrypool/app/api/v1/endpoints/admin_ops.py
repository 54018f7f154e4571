"""
Admin Operations API Endpoints.

Dead Letter Queue of gateway calls that exhausted their retries.
"""

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import datetime
from typing import List, Optional

from carrypool.app.db.session import get_db
from carrypool.app.models.dlq import DeadLetterQueue, DLQStatus
from carrypool.app.models.enums import UserRole
from carrypool.app.schemas.ops import DeadLetterResponse
from carrypool.app.core.exceptions import ResourceNotFoundError
from carrypool.app.core.guards import require_role
from carrypool.app.services.audit import log_event, AuditAction

router = APIRouter(prefix="/admin/ops", tags=["Admin - Ops"])


@router.get("/dlq", response_model=List[DeadLetterResponse])
async def list_dlq_items(
    dlq_status: Optional[DLQStatus] = Query(DLQStatus.FAILED, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """List failed settlement calls awaiting follow-up."""
    query = select(DeadLetterQueue).order_by(DeadLetterQueue.id.desc()).limit(limit)
    if dlq_status is not None:
        query = query.where(DeadLetterQueue.status == dlq_status)
    result = await db.execute(query)
    return result.scalars().all()


@router.post("/dlq/{dlq_id}/archive", response_model=DeadLetterResponse)
async def archive_dlq_item(
    dlq_id: int = Path(..., description="DLQ Item ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Mark a DLQ item as handled outside the system.
    """
    result = await db.execute(select(DeadLetterQueue).where(DeadLetterQueue.id == dlq_id))
    item = result.scalar_one_or_none()

    if not item:
        raise ResourceNotFoundError("DLQ item", dlq_id)

    item.status = DLQStatus.ARCHIVED
    item.last_retry_at = datetime.utcnow()

    await log_event(
        db=db,
        action=AuditAction.DLQ_ARCHIVED,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub"),
        entity_type="dlq",
        entity_id=item.id,
        metadata={"task_name": item.task_name}
    )
    await db.commit()
    await db.refresh(item)
    return item
