"""
Assignment API Endpoints.

Match requests, price negotiation, handover checklists and the
pickup/delivery transitions. Every mutation answers with the current
AssignmentSnapshot so clients can carry `version` into the next call.
"""

from fastapi import APIRouter, Depends, Path, Body, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import List, Optional

from carrypool.app.db.session import get_db
from carrypool.app.models.enums import UserRole
from carrypool.app.models.price_proposal import PriceProposal
from carrypool.app.schemas.assignment import (
    MatchRequest, ProposalRequest, ConfirmPriceRequest, VersionedRequest, CancelRequest,
    AssignmentSnapshot, CancelResponse, PriceProposalResponse
)
from carrypool.app.schemas.safety import SafetyConfirmationRequest, SafetyConfirmationResponse
from carrypool.app.schemas.dispute import DisputeCreate, DisputeResponse
from carrypool.app.schemas.transaction import TransactionResponse
from carrypool.app.core.dependencies import get_current_user
from carrypool.app.core.guards import require_role
from carrypool.app.domain.assignment.assignment_service import (
    AssignmentService, commit_or_conflict, load_assignment, load_package, load_trip,
    parties, require_party
)
from carrypool.app.domain.dispute.dispute_service import DisputeService
from carrypool.app.domain.escrow.escrow_service import EscrowService
from carrypool.app.domain.safety.safety_gate import SafetyGateService
from carrypool.app.services.payment_gateway import BasePaymentGateway, get_payment_gateway

router = APIRouter(prefix="/assignments", tags=["Assignments"])

member = require_role([UserRole.USER])


def _version(request: Optional[VersionedRequest]) -> Optional[int]:
    return request.expected_version if request else None


async def _snapshot(db: AsyncSession, assignment) -> AssignmentSnapshot:
    # Server-side timestamps are expired after an UPDATE
    await db.refresh(assignment)
    return AssignmentSnapshot.from_assignment(assignment)


@router.post("", response_model=AssignmentSnapshot, status_code=status.HTTP_201_CREATED)
async def request_match(
    match_request: MatchRequest,
    current_user: dict = Depends(member),
    db: AsyncSession = Depends(get_db)
):
    """
    Propose a package to a trip (sender or traveler).

    Validates package type, dimensions, currency and remaining capacity.
    """
    assignment = await AssignmentService.request_match(
        db,
        package_id=match_request.package_id,
        trip_id=match_request.trip_id,
        user_id=current_user["user_id"],
        proposed_price=match_request.proposed_price,
        note=match_request.note
    )
    return await _snapshot(db, assignment)


@router.get("/{assignment_id}", response_model=AssignmentSnapshot)
async def get_assignment(
    assignment_id: int = Path(..., description="Assignment ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Current snapshot (parties and admins)."""
    assignment = await AssignmentService.get_for_user(db, assignment_id, current_user)
    return await _snapshot(db, assignment)


@router.get("/{assignment_id}/proposals", response_model=List[PriceProposalResponse])
async def list_proposals(
    assignment_id: int = Path(..., description="Assignment ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Negotiation history, oldest first."""
    await AssignmentService.get_for_user(db, assignment_id, current_user)
    result = await db.execute(
        select(PriceProposal)
        .where(PriceProposal.assignment_id == assignment_id)
        .order_by(PriceProposal.id)
    )
    return result.scalars().all()


@router.post("/{assignment_id}/proposals", response_model=AssignmentSnapshot)
async def propose_price(
    assignment_id: int = Path(..., description="Assignment ID"),
    proposal: ProposalRequest = Body(...),
    current_user: dict = Depends(member),
    db: AsyncSession = Depends(get_db)
):
    """
    Propose a new price. Clears both parties' confirmations.
    """
    assignment = await AssignmentService.propose(
        db, assignment_id, current_user["user_id"], proposal.price, proposal.note,
        expected_version=proposal.expected_version
    )
    return await _snapshot(db, assignment)


@router.post("/{assignment_id}/confirm-price", response_model=AssignmentSnapshot)
async def confirm_price(
    assignment_id: int = Path(..., description="Assignment ID"),
    confirmation: Optional[ConfirmPriceRequest] = Body(None),
    current_user: dict = Depends(member),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db)
):
    """
    Confirm the current price.

    The second confirmation reserves trip capacity and authorizes the
    sender's payment; on a decline the assignment stays NEGOTIATING (402).
    """
    assignment = await AssignmentService.confirm_price(
        db, gateway, assignment_id, current_user["user_id"],
        payment_method_id=confirmation.payment_method_id if confirmation else None,
        expected_version=_version(confirmation)
    )
    return await _snapshot(db, assignment)


@router.post("/{assignment_id}/accept", response_model=AssignmentSnapshot)
async def accept_assignment(
    assignment_id: int = Path(..., description="Assignment ID"),
    request: Optional[VersionedRequest] = Body(None),
    current_user: dict = Depends(member),
    db: AsyncSession = Depends(get_db)
):
    """Commit to the handover. Both acceptances confirm the assignment."""
    assignment = await AssignmentService.accept(
        db, assignment_id, current_user["user_id"], expected_version=_version(request)
    )
    return await _snapshot(db, assignment)


@router.post("/{assignment_id}/pickup", response_model=AssignmentSnapshot)
async def pickup(
    assignment_id: int = Path(..., description="Assignment ID"),
    request: Optional[VersionedRequest] = Body(None),
    current_user: dict = Depends(member),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db)
):
    """
    Hand the package over to the traveler.

    Requires a complete PICKUP checklist; captures the escrowed payment.
    """
    assignment = await AssignmentService.pickup(
        db, gateway, assignment_id, current_user["user_id"], expected_version=_version(request)
    )
    return await _snapshot(db, assignment)


@router.post("/{assignment_id}/deliver", response_model=AssignmentSnapshot)
async def deliver(
    assignment_id: int = Path(..., description="Assignment ID"),
    request: Optional[VersionedRequest] = Body(None),
    current_user: dict = Depends(member),
    db: AsyncSession = Depends(get_db)
):
    """
    Complete delivery. Requires a complete DELIVERY checklist; releases
    the payout to the traveler.
    """
    assignment = await AssignmentService.deliver(
        db, assignment_id, current_user["user_id"], expected_version=_version(request)
    )
    return await _snapshot(db, assignment)


@router.post("/{assignment_id}/cancel", response_model=CancelResponse)
async def cancel_assignment(
    assignment_id: int = Path(..., description="Assignment ID"),
    request: Optional[CancelRequest] = Body(None),
    current_user: dict = Depends(get_current_user),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db)
):
    """
    Cancel before pickup.

    Returns 202 when a payment call is in flight; the cancel is applied
    when that call finishes.
    """
    assignment, queued = await AssignmentService.cancel(
        db, gateway, assignment_id, current_user,
        reason=request.reason if request else None, expected_version=_version(request)
    )
    response = CancelResponse(queued=queued, assignment=await _snapshot(db, assignment))
    if queued:
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=response.model_dump(mode="json"))
    return response


@router.post("/{assignment_id}/safety-confirmations", response_model=SafetyConfirmationResponse)
async def record_safety_confirmation(
    assignment_id: int = Path(..., description="Assignment ID"),
    confirmation: SafetyConfirmationRequest = Body(...),
    current_user: dict = Depends(member),
    db: AsyncSession = Depends(get_db)
):
    """
    Tick (or untick) one handover checklist item.
    """
    assignment = await load_assignment(db, assignment_id)
    package = await load_package(db, assignment.package_id)
    trip = await load_trip(db, assignment.trip_id)
    require_party(current_user["user_id"], package, trip)

    checklist_status = await SafetyGateService.record_confirmation(
        db,
        assignment,
        confirmation.event,
        confirmation.item,
        confirmation.value,
        confirmed_by_user_id=current_user["user_id"],
        confirmed_by_username=current_user.get("sub"),
        recipients=parties(package, trip)
    )
    await commit_or_conflict(db)

    return SafetyConfirmationResponse(
        assignment_id=assignment.id,
        event=confirmation.event,
        item=confirmation.item,
        value=confirmation.value,
        checklist_status=checklist_status,
        safety_checklist=assignment.safety_checklist
    )


@router.post("/{assignment_id}/disputes", response_model=DisputeResponse, status_code=status.HTTP_201_CREATED)
async def raise_dispute(
    assignment_id: int = Path(..., description="Assignment ID"),
    dispute_data: DisputeCreate = Body(...),
    current_user: dict = Depends(member),
    db: AsyncSession = Depends(get_db)
):
    """Freeze the assignment pending an admin verdict."""
    dispute = await DisputeService.raise_dispute(
        db, assignment_id, current_user["user_id"], dispute_data.reason,
        expected_version=dispute_data.expected_version
    )
    await db.refresh(dispute)
    return dispute


@router.get("/{assignment_id}/transactions", response_model=List[TransactionResponse])
async def list_transactions(
    assignment_id: int = Path(..., description="Assignment ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Escrow ledger of the assignment (parties and admins)."""
    await AssignmentService.get_for_user(db, assignment_id, current_user)
    return await EscrowService.list_transactions(db, assignment_id)
