"""
Pricing & Negotiation Protocol.

The reset-on-re-propose rule lives in apply_proposal(): a new price always
clears both confirmations, so nobody is bound to a price they did not see.
"""

from dataclasses import dataclass, replace
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from carrypool.app.core.exceptions import (
    AssignmentNotNegotiableError, InvalidPriceError, InvalidStateError, ConcurrentModificationError
)
from carrypool.app.domain.assignment.state_machine import (
    NEGOTIABLE_STATES, ensure_transition, is_terminal
)
from carrypool.app.models.assignment import Assignment
from carrypool.app.models.assignment_enums import AssignmentStatus
from carrypool.app.models.enums import Party
from carrypool.app.models.price_proposal import PriceProposal


@dataclass(frozen=True)
class NegotiationState:
    proposed_price: int
    proposed_by: Party
    confirmed_by_sender: bool
    confirmed_by_traveler: bool

    @property
    def both_confirmed(self) -> bool:
        return self.confirmed_by_sender and self.confirmed_by_traveler

    @classmethod
    def of(cls, assignment: Assignment) -> "NegotiationState":
        return cls(
            proposed_price=assignment.proposed_price,
            proposed_by=assignment.proposed_by,
            confirmed_by_sender=assignment.confirmed_by_sender,
            confirmed_by_traveler=assignment.confirmed_by_traveler,
        )


def apply_proposal(state: NegotiationState, by_party: Party, price: int) -> NegotiationState:
    """New price from `by_party`; both confirmations are invalidated."""
    if price <= 0:
        raise InvalidPriceError(price)
    return NegotiationState(
        proposed_price=price,
        proposed_by=by_party,
        confirmed_by_sender=False,
        confirmed_by_traveler=False,
    )


def apply_confirmation(state: NegotiationState, by_party: Party) -> NegotiationState:
    if by_party == Party.SENDER:
        return replace(state, confirmed_by_sender=True)
    return replace(state, confirmed_by_traveler=True)


def write_state(assignment: Assignment, state: NegotiationState) -> None:
    assignment.proposed_price = state.proposed_price
    assignment.proposed_by = state.proposed_by
    assignment.confirmed_by_sender = state.confirmed_by_sender
    assignment.confirmed_by_traveler = state.confirmed_by_traveler


def ensure_negotiable(assignment: Assignment) -> None:
    """
    Raises:
        AssignmentNotNegotiableError: Terminal or disputed assignment
        InvalidStateError: Assignment already left negotiation
        ConcurrentModificationError: Authorization in flight
    """
    if is_terminal(assignment.status) or assignment.status == AssignmentStatus.DISPUTED:
        raise AssignmentNotNegotiableError(assignment.status)
    if assignment.status not in NEGOTIABLE_STATES:
        raise InvalidStateError(
            f"Price is settled; assignment already {assignment.status.value}",
            current_status=assignment.status
        )
    if assignment.pending_operation is not None:
        raise ConcurrentModificationError(
            "Payment authorization in progress, please refresh",
            details={"pending_operation": assignment.pending_operation.value}
        )


def open_negotiation(assignment: Assignment) -> bool:
    """PROPOSED -> NEGOTIATING on the first negotiation action. Returns True if it moved."""
    if assignment.status == AssignmentStatus.PROPOSED:
        ensure_transition(assignment.status, AssignmentStatus.NEGOTIATING)
        assignment.status = AssignmentStatus.NEGOTIATING
        return True
    return False


class NegotiationService:

    @staticmethod
    async def propose(
        db: AsyncSession,
        assignment: Assignment,
        by_party: Party,
        by_user_id: int,
        price: int,
        note: Optional[str] = None
    ) -> PriceProposal:
        """
        Record a new proposal on a locked assignment row. Caller commits.
        """
        ensure_negotiable(assignment)

        new_state = apply_proposal(NegotiationState.of(assignment), by_party, price)
        write_state(assignment, new_state)
        open_negotiation(assignment)

        proposal = PriceProposal(
            assignment_id=assignment.id,
            party=by_party,
            proposed_by_user_id=by_user_id,
            price=price,
            note=note
        )
        db.add(proposal)
        await db.flush()
        return proposal

    @staticmethod
    def confirm(assignment: Assignment, by_party: Party) -> bool:
        """
        Set the party's confirmation flag. Returns True when both sides confirmed.
        """
        ensure_negotiable(assignment)

        open_negotiation(assignment)
        new_state = apply_confirmation(NegotiationState.of(assignment), by_party)
        write_state(assignment, new_state)
        return new_state.both_confirmed
