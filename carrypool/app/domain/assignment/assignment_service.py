"""
Assignment Service.

Drives an assignment from proposal to delivery or cancellation. Every
status change goes through the transition table in state_machine, writes
a tracking event and mirrors the package status.

Gateway calls are made in three steps: reserve the assignment with
`pending_operation` and commit, call the gateway with no row lock held,
then re-lock and finalize. A cancel arriving in between is queued and
applied (or dropped) when the call finalizes.
"""

import logging
from datetime import datetime
from typing import Optional, List, Tuple, Callable, Awaitable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from carrypool.app.core.exceptions import (
    AppException, ChecklistIncompleteError, ConcurrentModificationError, InvalidPriceError, InvalidStateError,
    InsufficientPermissionsError, PackageNotAcceptedError, PaymentAuthorizationError, ResourceNotFoundError,
    SettlementGatewayError, SettlementPreconditionError
)
from carrypool.app.domain.assignment.state_machine import (
    CAPACITY_HOLDING_STATES, NEGOTIABLE_STATES, ensure_idle, ensure_transition, is_terminal
)
from carrypool.app.domain.capacity.capacity_model import (
    ensure_compatible, reserve_capacity, restore_capacity
)
from carrypool.app.domain.escrow.escrow_service import EscrowService
from carrypool.app.domain.negotiation.negotiation_service import NegotiationService
from carrypool.app.domain.safety.safety_gate import ensure_complete
from carrypool.app.models.assignment import Assignment
from carrypool.app.models.assignment_enums import AssignmentStatus, PendingOperation
from carrypool.app.models.enums import Party, UserRole
from carrypool.app.models.notification import NotificationEvent
from carrypool.app.models.package import Package
from carrypool.app.models.package_enums import PackageStatus
from carrypool.app.models.price_proposal import PriceProposal
from carrypool.app.models.safety_enums import SafetyEvent
from carrypool.app.models.tracking_event import TrackingEvent
from carrypool.app.models.transaction import Transaction
from carrypool.app.models.transaction_enums import TransactionStatus
from carrypool.app.models.trip import Trip
from carrypool.app.models.trip_enums import TripStatus
from carrypool.app.services.audit import log_event, AuditAction
from carrypool.app.services.notification_service import NotificationService
from carrypool.app.services.payment_gateway import BasePaymentGateway

logger = logging.getLogger(__name__)

# Package status shown while its bound assignment is in a given state
PACKAGE_STATUS_FOR = {
    AssignmentStatus.MATCHED: PackageStatus.MATCHED,
    AssignmentStatus.CONFIRMED: PackageStatus.CONFIRMED,
    AssignmentStatus.IN_TRANSIT: PackageStatus.IN_TRANSIT,
    AssignmentStatus.DELIVERED: PackageStatus.DELIVERED,
    AssignmentStatus.DISPUTED: PackageStatus.DISPUTED,
    AssignmentStatus.CANCELLED: PackageStatus.POSTED,
}

TIMESTAMP_FOR = {
    AssignmentStatus.MATCHED: "matched_at",
    AssignmentStatus.CONFIRMED: "confirmed_at",
    AssignmentStatus.IN_TRANSIT: "picked_up_at",
    AssignmentStatus.DELIVERED: "delivered_at",
    AssignmentStatus.CANCELLED: "cancelled_at",
}


# Loading and locking

async def _fetch_one(db: AsyncSession, stmt):
    # Pending changes are written first so populate_existing cannot discard them
    await db.flush()
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def load_assignment(db: AsyncSession, assignment_id: int, lock: bool = True) -> Assignment:
    """
    Fetch an assignment, optionally under SELECT ... FOR UPDATE.

    `populate_existing` refreshes an instance already in the session so a
    re-lock after a gateway call sees the committed state.
    """
    stmt = select(Assignment).where(Assignment.id == assignment_id)
    if lock:
        stmt = stmt.with_for_update()
    assignment = await _fetch_one(db, stmt)
    if assignment is None:
        raise ResourceNotFoundError("Assignment", assignment_id)
    return assignment


async def load_package(db: AsyncSession, package_id: int, lock: bool = False) -> Package:
    stmt = select(Package).where(Package.id == package_id)
    if lock:
        stmt = stmt.with_for_update()
    package = await _fetch_one(db, stmt)
    if package is None:
        raise ResourceNotFoundError("Package", package_id)
    return package


async def load_trip(db: AsyncSession, trip_id: int, lock: bool = False) -> Trip:
    stmt = select(Trip).where(Trip.id == trip_id)
    if lock:
        stmt = stmt.with_for_update()
    trip = await _fetch_one(db, stmt)
    if trip is None:
        raise ResourceNotFoundError("Trip", trip_id)
    return trip


async def commit_or_conflict(db: AsyncSession) -> None:
    """Commit; a lost optimistic-lock race becomes ConcurrentModificationError."""
    try:
        await db.commit()
    except StaleDataError as e:
        await db.rollback()
        logger.info("Optimistic lock conflict: %s", e)
        raise ConcurrentModificationError() from e


def check_version(assignment: Assignment, expected_version: Optional[int]) -> None:
    if expected_version is not None and expected_version != assignment.version:
        raise ConcurrentModificationError(
            details={"expected_version": expected_version, "current_version": assignment.version}
        )


# Parties

def party_of(user_id: int, package: Package, trip: Trip) -> Optional[Party]:
    if user_id == package.sender_id:
        return Party.SENDER
    if user_id == trip.traveler_id:
        return Party.TRAVELER
    return None


def require_party(user_id: int, package: Package, trip: Trip) -> Party:
    party = party_of(user_id, package, trip)
    if party is None:
        raise InsufficientPermissionsError("Only the sender or the traveler can act on this assignment")
    return party


def parties(package: Package, trip: Trip) -> List[int]:
    return [package.sender_id, trip.traveler_id]


def counterparty(party: Party, package: Package, trip: Trip) -> int:
    return trip.traveler_id if party == Party.SENDER else package.sender_id


# Status changes

def add_tracking(db: AsyncSession, assignment: Assignment, event: str, description: Optional[str] = None) -> None:
    db.add(TrackingEvent(
        package_id=assignment.package_id,
        assignment_id=assignment.id,
        event=event,
        description=description
    ))


def set_status(
    db: AsyncSession,
    assignment: Assignment,
    package: Package,
    target: AssignmentStatus,
    description: Optional[str] = None,
    checked: bool = True
) -> None:
    """
    Move the assignment to `target` and mirror it on the package.

    `checked=False` is used by dispute verdicts, which leave DISPUTED
    through resume_targets() instead of the ordinary table.
    """
    if checked:
        ensure_transition(assignment.status, target)

    assignment.status = target
    stamp = TIMESTAMP_FOR.get(target)
    if stamp and getattr(assignment, stamp) is None:
        setattr(assignment, stamp, datetime.utcnow())

    if package.assignment_id == assignment.id and target in PACKAGE_STATUS_FOR:
        package.status = PACKAGE_STATUS_FOR[target]

    add_tracking(db, assignment, target.value, description)


async def finalize_cancel(
    db: AsyncSession,
    assignment: Assignment,
    reason: Optional[str],
    actor_id: Optional[int],
    checked: bool = True
) -> None:
    """
    Apply a cancellation on a locked assignment: give capacity back, unbind
    the package and mark CANCELLED. Refunds happen before this. Caller commits.
    """
    package = await load_package(db, assignment.package_id, lock=True)
    trip = await load_trip(db, assignment.trip_id, lock=True)

    if assignment.status in CAPACITY_HOLDING_STATES:
        restore_capacity(trip, package.weight_g)

    bound_here = package.assignment_id == assignment.id

    assignment.cancel_reason = reason
    assignment.cancel_requested = False
    assignment.pending_operation = None
    set_status(db, assignment, package, AssignmentStatus.CANCELLED, reason, checked=checked)

    if bound_here:
        package.trip_id = None
        package.assignment_id = None
        package.final_price = None

    await NotificationService.emit(
        db, NotificationEvent.ASSIGNMENT_CANCELLED, parties(package, trip),
        {"assignment_id": assignment.id, "reason": reason}
    )
    await log_event(
        db=db,
        action=AuditAction.ASSIGNMENT_CANCELLED,
        actor_id=actor_id,
        entity_type="assignment",
        entity_id=assignment.id,
        metadata={"reason": reason, "capacity_restored_g": package.weight_g if bound_here else 0}
    )


async def cancel_with_refund(
    db: AsyncSession,
    gateway: BasePaymentGateway,
    assignment: Assignment,
    reason: Optional[str],
    actor_id: Optional[int],
    checked: bool = True,
    on_cancelled: Optional[Callable[[Assignment], Awaitable[None]]] = None
) -> Assignment:
    """
    Cancel a locked assignment, refunding whatever the sender still has held.

    With money to return the refund goes through the three-step gateway
    pattern; a failed refund leaves the assignment where it was.
    `on_cancelled` runs inside the finalizing transaction.
    """
    payment = await EscrowService.get_payment(db, assignment.id)
    refundable = await EscrowService.refundable_amount(db, payment)

    if refundable > 0:
        assignment.pending_operation = PendingOperation.REFUNDING
        assignment.cancel_reason = reason
        await commit_or_conflict(db)

        try:
            await EscrowService.refund(db, gateway, assignment.id, None, reason)
        except (SettlementGatewayError, SettlementPreconditionError):
            assignment = await load_assignment(db, assignment.id)
            assignment.pending_operation = None
            if not assignment.cancel_requested:
                assignment.cancel_reason = None
            await db.commit()
            raise

        assignment = await load_assignment(db, assignment.id)

    await finalize_cancel(db, assignment, reason, actor_id, checked=checked)
    if on_cancelled is not None:
        await on_cancelled(assignment)
    await commit_or_conflict(db)
    return assignment


class AssignmentService:

    @staticmethod
    async def request_match(
        db: AsyncSession,
        package_id: int,
        trip_id: int,
        user_id: int,
        proposed_price: Optional[int] = None,
        note: Optional[str] = None
    ) -> Assignment:
        """
        Propose a package to a trip. Either side may start; the opening
        price defaults to the package's offered price.
        """
        package = await load_package(db, package_id)
        trip = await load_trip(db, trip_id)
        party = require_party(user_id, package, trip)

        if package.sender_id == trip.traveler_id:
            raise PackageNotAcceptedError("A traveler cannot carry their own package")
        if not package.is_active or package.status != PackageStatus.POSTED or package.assignment_id is not None:
            raise InvalidStateError(
                f"Package {package.id} is not open for matching", current_status=package.status
            )
        if trip.status != TripStatus.ACTIVE:
            raise InvalidStateError(f"Trip {trip.id} is not accepting packages", current_status=trip.status)

        ensure_compatible(package, trip)

        existing = await db.execute(
            select(Assignment.id).where(
                Assignment.package_id == package.id,
                Assignment.trip_id == trip.id,
                Assignment.status.in_(NEGOTIABLE_STATES)
            )
        )
        if existing.first() is not None:
            raise InvalidStateError("An open proposal for this package and trip already exists")

        price = proposed_price if proposed_price is not None else package.offered_price
        if price <= 0:
            raise InvalidPriceError(price)

        assignment = Assignment(
            package_id=package.id,
            trip_id=trip.id,
            requested_by_user_id=user_id,
            status=AssignmentStatus.PROPOSED,
            proposed_price=price,
            proposed_by=party,
            safety_checklist={}
        )
        db.add(assignment)
        await db.flush()

        db.add(PriceProposal(
            assignment_id=assignment.id, party=party, proposed_by_user_id=user_id, price=price, note=note
        ))
        add_tracking(db, assignment, AssignmentStatus.PROPOSED.value, f"Proposed to trip {trip.id}")

        await NotificationService.emit(
            db, NotificationEvent.ASSIGNMENT_PROPOSED, [counterparty(party, package, trip)],
            {"assignment_id": assignment.id, "price": price, "currency": trip.currency}
        )
        await log_event(
            db=db,
            action=AuditAction.ASSIGNMENT_REQUESTED,
            actor_id=user_id,
            entity_type="assignment",
            entity_id=assignment.id,
            metadata={"package_id": package.id, "trip_id": trip.id, "price": price, "party": party.value}
        )
        await commit_or_conflict(db)
        return assignment

    @staticmethod
    async def get_for_user(db: AsyncSession, assignment_id: int, user: dict) -> Assignment:
        assignment = await load_assignment(db, assignment_id, lock=False)
        if user.get("role") != UserRole.ADMIN.value:
            package = await load_package(db, assignment.package_id)
            trip = await load_trip(db, assignment.trip_id)
            require_party(user["user_id"], package, trip)
        return assignment

    @staticmethod
    async def propose(
        db: AsyncSession,
        assignment_id: int,
        user_id: int,
        price: int,
        note: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> Assignment:
        assignment = await load_assignment(db, assignment_id)
        package = await load_package(db, assignment.package_id)
        trip = await load_trip(db, assignment.trip_id)
        party = require_party(user_id, package, trip)
        check_version(assignment, expected_version)

        was = assignment.status
        await NegotiationService.propose(db, assignment, party, user_id, price, note)
        if was != assignment.status:
            add_tracking(db, assignment, assignment.status.value, "Negotiation opened")

        await NotificationService.emit(
            db, NotificationEvent.PRICE_PROPOSED, [counterparty(party, package, trip)],
            {"assignment_id": assignment.id, "price": price, "by": party.value}
        )
        await log_event(
            db=db,
            action=AuditAction.PRICE_PROPOSED,
            actor_id=user_id,
            entity_type="assignment",
            entity_id=assignment.id,
            metadata={"price": price, "party": party.value}
        )
        await commit_or_conflict(db)
        return assignment

    @staticmethod
    async def confirm_price(
        db: AsyncSession,
        gateway: BasePaymentGateway,
        assignment_id: int,
        user_id: int,
        payment_method_id: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> Assignment:
        """
        Confirm the current price. The second confirmation matches the
        assignment: capacity is reserved and the price is authorized.

        Raises:
            PaymentAuthorizationError: Sender has no payment method, or the
                gateway declined; the assignment stays NEGOTIATING
        """
        assignment = await load_assignment(db, assignment_id)
        package = await load_package(db, assignment.package_id)
        trip = await load_trip(db, assignment.trip_id)
        party = require_party(user_id, package, trip)
        check_version(assignment, expected_version)

        if party == Party.SENDER:
            if payment_method_id:
                assignment.payment_method_id = payment_method_id
            if not assignment.payment_method_id:
                raise PaymentAuthorizationError("A payment method is required to confirm as sender")

        was = assignment.status
        both_confirmed = NegotiationService.confirm(assignment, party)
        if was != assignment.status:
            add_tracking(db, assignment, assignment.status.value, "Negotiation opened")

        await log_event(
            db=db,
            action=AuditAction.PRICE_CONFIRMED,
            actor_id=user_id,
            entity_type="assignment",
            entity_id=assignment.id,
            metadata={"price": assignment.proposed_price, "party": party.value}
        )

        if not both_confirmed:
            await commit_or_conflict(db)
            return assignment

        return await AssignmentService._match(db, gateway, assignment, user_id)

    @staticmethod
    async def _match(
        db: AsyncSession,
        gateway: BasePaymentGateway,
        assignment: Assignment,
        user_id: int
    ) -> Assignment:
        # Reserve: capacity and binding under the trip and package locks
        ensure_transition(assignment.status, AssignmentStatus.MATCHED)
        trip = await load_trip(db, assignment.trip_id, lock=True)
        package = await load_package(db, assignment.package_id, lock=True)

        if package.assignment_id is not None or package.status != PackageStatus.POSTED:
            raise InvalidStateError(
                f"Package {package.id} is already matched to another trip", current_status=package.status
            )
        if trip.status != TripStatus.ACTIVE:
            raise InvalidStateError(f"Trip {trip.id} is not accepting packages", current_status=trip.status)

        reserve_capacity(trip, package.weight_g)
        package.trip_id = trip.id
        package.assignment_id = assignment.id
        assignment.pending_operation = PendingOperation.AUTHORIZING
        await commit_or_conflict(db)

        # Authorize with no lock held
        failure = None
        try:
            await EscrowService.authorize(
                db, gateway, assignment, package.sender_id, trip.currency, assignment.payment_method_id
            )
        except PaymentAuthorizationError as e:
            failure = e

        # Finalize
        assignment = await load_assignment(db, assignment.id)
        trip = await load_trip(db, assignment.trip_id, lock=True)
        package = await load_package(db, assignment.package_id, lock=True)
        assignment.pending_operation = None

        if failure is not None:
            restore_capacity(trip, package.weight_g)
            if package.assignment_id == assignment.id:
                package.trip_id = None
                package.assignment_id = None
            # Sender must confirm again, possibly with another card
            assignment.confirmed_by_sender = False

            await NotificationService.emit(
                db, NotificationEvent.PAYMENT_FAILED, [package.sender_id],
                {"assignment_id": assignment.id, "reason": failure.details.get("reason")}
            )
            await log_event(
                db=db,
                action=AuditAction.PAYMENT_AUTHORIZATION_FAILED,
                actor_id=user_id,
                entity_type="assignment",
                entity_id=assignment.id,
                metadata=failure.details
            )
            if assignment.cancel_requested:
                await finalize_cancel(
                    db, assignment, assignment.cancel_reason, assignment.cancel_requested_by_user_id
                )
            await commit_or_conflict(db)
            raise failure

        if assignment.agreed_price is None:
            assignment.agreed_price = assignment.proposed_price
        package.final_price = assignment.agreed_price
        set_status(db, assignment, package, AssignmentStatus.MATCHED, f"Matched at {assignment.agreed_price}")

        cancelled_siblings = await AssignmentService._cancel_siblings(db, assignment, package)

        await NotificationService.emit(
            db, NotificationEvent.ASSIGNMENT_MATCHED, parties(package, trip),
            {"assignment_id": assignment.id, "agreed_price": assignment.agreed_price, "currency": trip.currency}
        )
        await log_event(
            db=db,
            action=AuditAction.ASSIGNMENT_MATCHED,
            actor_id=user_id,
            entity_type="assignment",
            entity_id=assignment.id,
            metadata={
                "agreed_price": assignment.agreed_price,
                "reserved_g": package.weight_g,
                "cancelled_siblings": cancelled_siblings
            }
        )
        await commit_or_conflict(db)

        if assignment.cancel_requested:
            assignment = await AssignmentService._run_queued_cancel(db, gateway, assignment.id)
        return assignment

    @staticmethod
    async def _cancel_siblings(db: AsyncSession, assignment: Assignment, package: Package) -> List[int]:
        """Close the package's other open proposals once it is matched."""
        result = await db.execute(
            select(Assignment).where(
                Assignment.package_id == package.id,
                Assignment.id != assignment.id,
                Assignment.status.in_(NEGOTIABLE_STATES)
            ).with_for_update()
        )
        siblings = result.scalars().all()
        for sibling in siblings:
            reason = f"Package matched through assignment {assignment.id}"
            sibling.cancel_reason = reason
            set_status(db, sibling, package, AssignmentStatus.CANCELLED, reason)
            trip = await load_trip(db, sibling.trip_id)
            await NotificationService.emit(
                db, NotificationEvent.ASSIGNMENT_CANCELLED, [trip.traveler_id],
                {"assignment_id": sibling.id, "reason": reason}
            )
        return [s.id for s in siblings]

    @staticmethod
    async def accept(
        db: AsyncSession,
        assignment_id: int,
        user_id: int,
        expected_version: Optional[int] = None
    ) -> Assignment:
        """
        Record a party's commitment to hand over. When both parties have
        accepted and the escrow hold exists the assignment is CONFIRMED.
        """
        assignment = await load_assignment(db, assignment_id)
        package = await load_package(db, assignment.package_id)
        trip = await load_trip(db, assignment.trip_id)
        party = require_party(user_id, package, trip)
        check_version(assignment, expected_version)
        ensure_idle(assignment)

        if assignment.status != AssignmentStatus.MATCHED:
            ensure_transition(assignment.status, AssignmentStatus.CONFIRMED)

        flag = "accepted_by_sender" if party == Party.SENDER else "accepted_by_traveler"
        if getattr(assignment, flag):
            return assignment
        setattr(assignment, flag, True)

        await log_event(
            db=db,
            action=AuditAction.ASSIGNMENT_ACCEPTED,
            actor_id=user_id,
            entity_type="assignment",
            entity_id=assignment.id,
            metadata={"party": party.value}
        )

        if assignment.accepted_by_sender and assignment.accepted_by_traveler:
            payment = await EscrowService.get_payment(db, assignment.id)
            if payment is None or payment.status != TransactionStatus.PENDING or not payment.gateway_txn_id:
                raise SettlementPreconditionError(
                    "No live payment authorization on file",
                    details={
                        "assignment_id": assignment.id,
                        "payment_status": payment.status.value if payment is not None else None
                    }
                )
            package = await load_package(db, assignment.package_id, lock=True)
            set_status(db, assignment, package, AssignmentStatus.CONFIRMED, "Both parties accepted")
            await NotificationService.emit(
                db, NotificationEvent.ASSIGNMENT_CONFIRMED, parties(package, trip),
                {"assignment_id": assignment.id}
            )

        await commit_or_conflict(db)
        return assignment

    @staticmethod
    async def pickup(
        db: AsyncSession,
        gateway: BasePaymentGateway,
        assignment_id: int,
        user_id: int,
        expected_version: Optional[int] = None
    ) -> Assignment:
        """
        Hand the package to the traveler. Requires a complete PICKUP
        checklist; captures the escrowed payment.

        Raises:
            ChecklistIncompleteError: PICKUP gate not complete, checked before the
                capture and again when it finalizes
            SettlementGatewayError: Capture failed; assignment stays CONFIRMED
        """
        assignment = await load_assignment(db, assignment_id)
        package = await load_package(db, assignment.package_id)
        trip = await load_trip(db, assignment.trip_id)
        require_party(user_id, package, trip)
        check_version(assignment, expected_version)
        ensure_idle(assignment)
        ensure_transition(assignment.status, AssignmentStatus.IN_TRANSIT)
        ensure_complete(assignment, SafetyEvent.PICKUP)

        payment = await EscrowService.get_payment(db, assignment.id)
        if payment is None:
            raise SettlementPreconditionError(
                "No payment authorization on file", details={"assignment_id": assignment.id}
            )

        assignment.pending_operation = PendingOperation.CAPTURING
        await commit_or_conflict(db)

        failure = None
        try:
            await EscrowService.capture(db, gateway, payment)
        except (SettlementGatewayError, SettlementPreconditionError) as e:
            failure = e

        assignment = await load_assignment(db, assignment.id)
        assignment.pending_operation = None

        if failure is not None:
            await log_event(
                db=db,
                action=AuditAction.SETTLEMENT_FAILED,
                actor_id=user_id,
                entity_type="assignment",
                entity_id=assignment.id,
                metadata={"operation": "capture", **failure.details}
            )
            await commit_or_conflict(db)
            if assignment.cancel_requested:
                await AssignmentService._run_queued_cancel(db, gateway, assignment.id)
            raise failure

        try:
            # Re-read under the lock; the capture stays on file for the next attempt
            ensure_complete(assignment, SafetyEvent.PICKUP)
        except ChecklistIncompleteError:
            await commit_or_conflict(db)
            if assignment.cancel_requested:
                await AssignmentService._run_queued_cancel(db, gateway, assignment.id)
            raise

        package = await load_package(db, assignment.package_id, lock=True)
        set_status(db, assignment, package, AssignmentStatus.IN_TRANSIT, "Picked up by traveler")

        if assignment.cancel_requested:
            # Package is moving; the requester has to open a dispute instead
            await log_event(
                db=db,
                action=AuditAction.CANCEL_DROPPED,
                actor_id=assignment.cancel_requested_by_user_id,
                entity_type="assignment",
                entity_id=assignment.id,
                metadata={"reason": assignment.cancel_reason, "status": assignment.status.value}
            )
            assignment.cancel_requested = False
            assignment.cancel_reason = None
            assignment.cancel_requested_by_user_id = None

        await NotificationService.emit(
            db, NotificationEvent.ASSIGNMENT_IN_TRANSIT, parties(package, trip),
            {"assignment_id": assignment.id}
        )
        await log_event(
            db=db,
            action=AuditAction.ASSIGNMENT_PICKED_UP,
            actor_id=user_id,
            entity_type="assignment",
            entity_id=assignment.id,
            metadata={"captured": payment.amount, "net_amount": payment.net_amount}
        )
        await commit_or_conflict(db)
        return assignment

    @staticmethod
    async def deliver(
        db: AsyncSession,
        assignment_id: int,
        user_id: int,
        expected_version: Optional[int] = None
    ) -> Assignment:
        """
        Complete the handover. Requires a complete DELIVERY checklist and
        releases the escrow to the traveler in the same transaction.
        """
        assignment = await load_assignment(db, assignment_id)
        package = await load_package(db, assignment.package_id, lock=True)
        trip = await load_trip(db, assignment.trip_id)
        require_party(user_id, package, trip)
        check_version(assignment, expected_version)
        ensure_idle(assignment)
        ensure_transition(assignment.status, AssignmentStatus.DELIVERED)
        ensure_complete(assignment, SafetyEvent.DELIVERY)

        payout = await EscrowService.release(db, assignment, trip.traveler_id, parties(package, trip))
        set_status(db, assignment, package, AssignmentStatus.DELIVERED, "Delivered to recipient")

        await log_event(
            db=db,
            action=AuditAction.ASSIGNMENT_DELIVERED,
            actor_id=user_id,
            entity_type="assignment",
            entity_id=assignment.id,
            metadata={"payout": payout.amount, "payout_transaction_id": payout.id}
        )
        await commit_or_conflict(db)
        return assignment

    @staticmethod
    async def cancel(
        db: AsyncSession,
        gateway: BasePaymentGateway,
        assignment_id: int,
        user: dict,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> Tuple[Assignment, bool]:
        """
        Cancel by either party before pickup.

        Returns:
            (assignment, queued). `queued` is True when a gateway call was in
            flight and the cancel will be applied when it finalizes.
        """
        user_id = user["user_id"]
        assignment = await load_assignment(db, assignment_id)
        package = await load_package(db, assignment.package_id)
        trip = await load_trip(db, assignment.trip_id)
        if user.get("role") != UserRole.ADMIN.value:
            require_party(user_id, package, trip)
        check_version(assignment, expected_version)

        if assignment.status == AssignmentStatus.IN_TRANSIT:
            raise InvalidStateError(
                "Package is in transit and can no longer be cancelled; open a dispute instead",
                current_status=assignment.status
            )
        ensure_transition(assignment.status, AssignmentStatus.CANCELLED)

        if assignment.pending_operation is not None:
            assignment.cancel_requested = True
            assignment.cancel_reason = reason
            assignment.cancel_requested_by_user_id = user_id
            await log_event(
                db=db,
                action=AuditAction.CANCEL_QUEUED,
                actor_id=user_id,
                entity_type="assignment",
                entity_id=assignment.id,
                metadata={"reason": reason, "pending_operation": assignment.pending_operation.value}
            )
            await commit_or_conflict(db)
            return assignment, True

        assignment = await cancel_with_refund(db, gateway, assignment, reason, user_id)
        return assignment, False

    @staticmethod
    async def _run_queued_cancel(db: AsyncSession, gateway: BasePaymentGateway, assignment_id: int) -> Assignment:
        """
        Apply a cancel that was queued behind a gateway call.

        If the cancel itself fails (refund gateway down) the request stays
        queued on the row, the failure is logged and the requester gets a
        PAYMENT_FAILED notification; the step that just finalized has
        already been committed.
        """
        assignment = await load_assignment(db, assignment_id)
        if not assignment.cancel_requested:
            return assignment
        if is_terminal(assignment.status) or assignment.status == AssignmentStatus.IN_TRANSIT:
            assignment.cancel_requested = False
            await commit_or_conflict(db)
            return assignment

        try:
            return await cancel_with_refund(
                db, gateway, assignment, assignment.cancel_reason, assignment.cancel_requested_by_user_id
            )
        except AppException as e:
            logger.error(
                "Queued cancel of assignment %s not applied: %s", assignment_id, e.message,
                extra={"error_code": e.error_code, "details": e.details}
            )
            assignment = await load_assignment(db, assignment_id, lock=False)
            if assignment.cancel_requested_by_user_id is not None:
                await NotificationService.emit(
                    db, NotificationEvent.PAYMENT_FAILED, [assignment.cancel_requested_by_user_id],
                    {"assignment_id": assignment_id, "operation": "cancel", "error_code": e.error_code}
                )
                await db.commit()
            return assignment

    @staticmethod
    async def refund(
        db: AsyncSession,
        gateway: BasePaymentGateway,
        assignment_id: int,
        admin: dict,
        amount: Optional[int] = None,
        reason: Optional[str] = None
    ) -> Transaction:
        """
        Admin refund, full or partial, without changing assignment status.

        Raises:
            SettlementPreconditionError: Nothing refundable or already paid out
        """
        assignment = await load_assignment(db, assignment_id)
        ensure_idle(assignment)
        await EscrowService.check_refund(db, assignment.id, amount)

        assignment.pending_operation = PendingOperation.REFUNDING
        await commit_or_conflict(db)

        try:
            refund = await EscrowService.refund(db, gateway, assignment.id, amount, reason)
        except (SettlementGatewayError, SettlementPreconditionError):
            assignment = await load_assignment(db, assignment.id)
            assignment.pending_operation = None
            await db.commit()
            raise

        assignment = await load_assignment(db, assignment.id)
        assignment.pending_operation = None
        await log_event(
            db=db,
            action=AuditAction.REFUND_ISSUED,
            actor_id=admin["user_id"],
            actor_username=admin.get("sub"),
            entity_type="assignment",
            entity_id=assignment.id,
            metadata={"amount": refund.amount, "refund_transaction_id": refund.id, "reason": reason}
        )
        await commit_or_conflict(db)

        if assignment.cancel_requested:
            await AssignmentService._run_queued_cancel(db, gateway, assignment.id)
        return refund

    @staticmethod
    async def cancel_package(db: AsyncSession, package_id: int, user_id: int) -> Package:
        """
        Withdraw a posted package. Open proposals are cancelled with it;
        a matched package must have its assignment cancelled first.
        """
        package = await load_package(db, package_id, lock=True)
        if package.sender_id != user_id:
            raise InsufficientPermissionsError("Only the sender can cancel this package")
        if package.status != PackageStatus.POSTED or package.assignment_id is not None:
            raise InvalidStateError(
                "Package is matched; cancel its assignment first", current_status=package.status
            )

        result = await db.execute(
            select(Assignment).where(
                Assignment.package_id == package.id,
                Assignment.status.in_(NEGOTIABLE_STATES)
            ).with_for_update()
        )
        for assignment in result.scalars().all():
            assignment.cancel_reason = "Package withdrawn by sender"
            set_status(db, assignment, package, AssignmentStatus.CANCELLED, assignment.cancel_reason)

        package.status = PackageStatus.CANCELLED
        package.is_active = False
        await log_event(
            db=db,
            action=AuditAction.PACKAGE_CANCELLED,
            actor_id=user_id,
            entity_type="package",
            entity_id=package.id
        )
        await commit_or_conflict(db)
        return package
