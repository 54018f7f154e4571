"""
Escrow ledger schemas. Amounts are integer minor units.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, Dict
from carrypool.app.models.transaction_enums import TransactionType, TransactionStatus


class TransactionResponse(BaseModel):
    id: int
    type: TransactionType
    status: TransactionStatus
    amount: int
    platform_fee: int
    gateway_fee: int
    net_amount: int
    currency: str
    user_id: int
    assignment_id: int
    parent_transaction_id: Optional[int]
    gateway_txn_id: Optional[str]
    description: Optional[str]
    processed_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(None, gt=0, description="Defaults to the remaining refundable balance")
    reason: Optional[str] = Field(None, max_length=255)


class TransactionMetrics(BaseModel):
    """Completed ledger totals per type, per currency."""
    totals: Dict[str, Dict[str, int]]
    counts: Dict[str, int]
    failed_authorizations: int
