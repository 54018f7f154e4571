"""
Admin Dispute API Endpoints.

Admins review disputes and issue verdicts.
"""

from fastapi import APIRouter, Depends, Path, Body, Query, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from carrypool.app.db.session import get_db
from carrypool.app.models.dispute_enums import DisputeStatus
from carrypool.app.models.enums import UserRole
from carrypool.app.schemas.dispute import DisputeResponse, VerdictRequest
from carrypool.app.core.guards import require_role
from carrypool.app.domain.dispute.dispute_service import DisputeService
from carrypool.app.services.payment_gateway import BasePaymentGateway, get_payment_gateway

router = APIRouter(prefix="/admin/disputes", tags=["Admin - Disputes"])


@router.get("", response_model=List[DisputeResponse])
async def list_disputes(
    dispute_status: Optional[DisputeStatus] = Query(None, alias="status"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """List disputes, newest first."""
    return await DisputeService.list_disputes(db, dispute_status)


@router.post("/{dispute_id}/review", response_model=DisputeResponse)
async def review_dispute(
    dispute_id: int = Path(..., description="Dispute ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Take an OPEN dispute under review."""
    dispute = await DisputeService.mark_under_review(db, dispute_id, current_user)
    await db.refresh(dispute)
    return dispute


@router.post("/{dispute_id}/verdict", response_model=DisputeResponse)
async def resolve_dispute(
    dispute_id: int = Path(..., description="Dispute ID"),
    verdict: VerdictRequest = Body(...),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db)
):
    """
    Resolve a dispute.

    RESOLVE_FORWARD resumes the assignment where it was frozen;
    RESOLVE_CANCEL cancels it and refunds the sender.
    """
    if verdict.dispute_id is not None and verdict.dispute_id != dispute_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="dispute_id in body does not match the path"
        )

    dispute = await DisputeService.resolve(
        db, gateway, dispute_id, verdict.outcome, verdict.note, current_user
    )
    await db.refresh(dispute)
    return dispute
