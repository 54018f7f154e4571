"""
Dispute schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional
from carrypool.app.models.assignment_enums import AssignmentStatus
from carrypool.app.models.dispute_enums import DisputeStatus, DisputeOutcome


class DisputeCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    expected_version: Optional[int] = Field(None, ge=1)


class VerdictRequest(BaseModel):
    """Admin verdict. `dispute_id` in the body must match the path when given."""
    dispute_id: Optional[int] = None
    outcome: DisputeOutcome
    note: Optional[str] = Field(None, max_length=2000)


class DisputeResponse(BaseModel):
    id: int
    assignment_id: int
    raised_by_user_id: int
    reason: str
    status: DisputeStatus
    previous_status: AssignmentStatus
    resolution_verdict: Optional[DisputeOutcome]
    resolution_note: Optional[str]
    resolved_by_admin_id: Optional[int]
    resolved_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True
