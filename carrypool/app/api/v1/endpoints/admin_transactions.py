"""
Admin Escrow API Endpoints.

Manual refunds and ledger metrics.
"""

from fastapi import APIRouter, Depends, Path, Body
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from typing import Optional

from carrypool.app.db.session import get_db
from carrypool.app.models.enums import UserRole
from carrypool.app.models.transaction import Transaction
from carrypool.app.models.transaction_enums import TransactionType, TransactionStatus
from carrypool.app.schemas.transaction import RefundRequest, TransactionResponse, TransactionMetrics
from carrypool.app.core.guards import require_role
from carrypool.app.domain.assignment.assignment_service import AssignmentService
from carrypool.app.services.payment_gateway import BasePaymentGateway, get_payment_gateway

router = APIRouter(prefix="/admin", tags=["Admin - Escrow"])


@router.post("/assignments/{assignment_id}/refund", response_model=TransactionResponse)
async def refund_assignment(
    assignment_id: int = Path(..., description="Assignment ID"),
    refund_request: Optional[RefundRequest] = Body(None),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db)
):
    """
    Refund the sender, fully or partially.

    Rejected once the traveler has been paid out.
    """
    refund = await AssignmentService.refund(
        db, gateway, assignment_id, current_user,
        amount=refund_request.amount if refund_request else None,
        reason=refund_request.reason if refund_request else None
    )
    await db.refresh(refund)
    return refund


@router.get("/transactions/metrics", response_model=TransactionMetrics)
async def transaction_metrics(
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Completed ledger totals by type and currency.
    """
    result = await db.execute(
        select(Transaction.type, Transaction.currency, func.sum(Transaction.amount), func.count(Transaction.id))
        .where(Transaction.status == TransactionStatus.COMPLETED)
        .group_by(Transaction.type, Transaction.currency)
    )

    totals = {}
    counts = {t.value: 0 for t in TransactionType}
    for txn_type, currency, total, count in result.all():
        totals.setdefault(txn_type.value, {})[currency] = int(total or 0)
        counts[txn_type.value] += count

    failed = await db.execute(
        select(func.count(Transaction.id)).where(
            Transaction.type == TransactionType.PAYMENT,
            Transaction.status == TransactionStatus.FAILED
        )
    )

    return TransactionMetrics(totals=totals, counts=counts, failed_authorizations=failed.scalar_one())
