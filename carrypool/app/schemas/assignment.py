"""
Assignment Pydantic schemas.

Mutating requests may carry `expected_version`; a mismatch is rejected
with ERR_CONFLICT_001 so the client re-reads before retrying.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, Dict
from carrypool.app.domain.safety.safety_gate import summarize
from carrypool.app.models.assignment_enums import AssignmentStatus, PendingOperation
from carrypool.app.models.enums import Party


class MatchRequest(BaseModel):
    """Propose a package to a trip."""
    package_id: int
    trip_id: int
    proposed_price: Optional[int] = Field(None, gt=0, description="Defaults to the package's offered price")
    note: Optional[str] = Field(None, max_length=500)


class VersionedRequest(BaseModel):
    expected_version: Optional[int] = Field(None, ge=1)


class ProposalRequest(VersionedRequest):
    price: int = Field(..., gt=0, description="Price in minor units")
    note: Optional[str] = Field(None, max_length=500)


class ConfirmPriceRequest(VersionedRequest):
    payment_method_id: Optional[str] = Field(None, max_length=100, description="Required for the sender")


class CancelRequest(VersionedRequest):
    reason: Optional[str] = Field(None, max_length=500)


class AssignmentSnapshot(BaseModel):
    """Read model of an assignment."""
    id: int
    status: AssignmentStatus
    version: int
    package_id: int
    trip_id: int
    proposed_price: int
    proposed_by: Party
    agreed_price: Optional[int]
    confirmed_by_sender: bool
    confirmed_by_traveler: bool
    accepted_by_sender: bool
    accepted_by_traveler: bool
    safety_checklist: Dict[str, Dict[str, bool]]
    checklist_status: Dict[str, str]
    cancel_reason: Optional[str]
    cancel_requested: bool
    pending_operation: Optional[PendingOperation]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_assignment(cls, assignment) -> "AssignmentSnapshot":
        checklist = assignment.safety_checklist or {}
        return cls(
            id=assignment.id,
            status=assignment.status,
            version=assignment.version,
            package_id=assignment.package_id,
            trip_id=assignment.trip_id,
            proposed_price=assignment.proposed_price,
            proposed_by=assignment.proposed_by,
            agreed_price=assignment.agreed_price,
            confirmed_by_sender=assignment.confirmed_by_sender,
            confirmed_by_traveler=assignment.confirmed_by_traveler,
            accepted_by_sender=assignment.accepted_by_sender,
            accepted_by_traveler=assignment.accepted_by_traveler,
            safety_checklist=checklist,
            checklist_status=summarize(checklist),
            cancel_reason=assignment.cancel_reason,
            cancel_requested=assignment.cancel_requested,
            pending_operation=assignment.pending_operation,
            created_at=assignment.created_at,
            updated_at=assignment.updated_at,
        )


class CancelResponse(BaseModel):
    queued: bool
    assignment: AssignmentSnapshot


class PriceProposalResponse(BaseModel):
    id: int
    assignment_id: int
    party: Party
    proposed_by_user_id: int
    price: int
    note: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True
