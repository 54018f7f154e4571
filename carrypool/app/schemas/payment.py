"""
Payment gateway callback schemas.
"""

from pydantic import BaseModel, Field


class GatewayCallback(BaseModel):
    event_id: str = Field(..., min_length=1, max_length=100)
    gateway_txn_id: str = Field(..., min_length=1, max_length=100)
    event: str = Field(..., min_length=1, max_length=50, description="e.g. payment.captured")
    status: str = Field(..., min_length=1, max_length=20)


class CallbackAck(BaseModel):
    received: bool = True
    duplicate: bool = False
    applied: bool = False
