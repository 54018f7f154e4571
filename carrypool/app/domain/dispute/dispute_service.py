"""
Dispute Resolution Overlay.

A dispute freezes the assignment in DISPUTED. Only an admin verdict moves
it again: forward to the state it was frozen in, or to CANCELLED with a
refund. Money is never released from a dispute.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from carrypool.app.core.exceptions import InvalidStateError, ResourceNotFoundError
from carrypool.app.domain.assignment.assignment_service import (
    cancel_with_refund, check_version, commit_or_conflict, load_assignment, load_package,
    load_trip, parties, require_party, set_status
)
from carrypool.app.domain.assignment.state_machine import DISPUTABLE_STATES, ensure_idle, resume_targets
from carrypool.app.models.assignment import Assignment
from carrypool.app.models.assignment_enums import AssignmentStatus
from carrypool.app.models.dispute import Dispute
from carrypool.app.models.dispute_enums import DisputeStatus, DisputeOutcome
from carrypool.app.models.notification import NotificationEvent
from carrypool.app.services.audit import log_event, AuditAction
from carrypool.app.services.notification_service import NotificationService
from carrypool.app.services.payment_gateway import BasePaymentGateway

logger = logging.getLogger(__name__)

UNRESOLVED = (DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW)


async def _load_dispute(db: AsyncSession, dispute_id: int, lock: bool = True) -> Dispute:
    stmt = select(Dispute).where(Dispute.id == dispute_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise ResourceNotFoundError("Dispute", dispute_id)
    return dispute


class DisputeService:

    @staticmethod
    async def raise_dispute(
        db: AsyncSession,
        assignment_id: int,
        user_id: int,
        reason: str,
        expected_version: Optional[int] = None
    ) -> Dispute:
        """
        Freeze a live assignment. Either party may raise; the pre-dispute
        status is kept on the dispute for a forward verdict.
        """
        assignment = await load_assignment(db, assignment_id)
        package = await load_package(db, assignment.package_id, lock=True)
        trip = await load_trip(db, assignment.trip_id)
        require_party(user_id, package, trip)

        check_version(assignment, expected_version)
        ensure_idle(assignment)

        if assignment.status not in DISPUTABLE_STATES:
            raise InvalidStateError(
                f"Cannot dispute an assignment in status {assignment.status.value}",
                current_status=assignment.status
            )

        open_dispute = await db.execute(
            select(Dispute.id).where(
                Dispute.assignment_id == assignment.id,
                Dispute.status.in_(UNRESOLVED)
            )
        )
        if open_dispute.first() is not None:
            raise InvalidStateError("Assignment already has an open dispute", current_status=assignment.status)

        dispute = Dispute(
            assignment_id=assignment.id,
            raised_by_user_id=user_id,
            reason=reason,
            status=DisputeStatus.OPEN,
            previous_status=assignment.status
        )
        db.add(dispute)
        set_status(db, assignment, package, AssignmentStatus.DISPUTED, reason)
        await db.flush()

        await NotificationService.emit(
            db, NotificationEvent.ASSIGNMENT_DISPUTED, parties(package, trip),
            {"assignment_id": assignment.id, "dispute_id": dispute.id}
        )
        await log_event(
            db=db,
            action=AuditAction.DISPUTE_RAISED,
            actor_id=user_id,
            entity_type="dispute",
            entity_id=dispute.id,
            metadata={"assignment_id": assignment.id, "previous_status": dispute.previous_status.value}
        )
        await commit_or_conflict(db)
        logger.info("Dispute %s raised on assignment %s", dispute.id, assignment.id)
        return dispute

    @staticmethod
    async def list_disputes(db: AsyncSession, status: Optional[DisputeStatus] = None) -> List[Dispute]:
        query = select(Dispute).order_by(Dispute.created_at.desc(), Dispute.id.desc())
        if status is not None:
            query = query.where(Dispute.status == status)
        result = await db.execute(query)
        return result.scalars().all()

    @staticmethod
    async def mark_under_review(db: AsyncSession, dispute_id: int, admin: dict) -> Dispute:
        dispute = await _load_dispute(db, dispute_id)
        if dispute.status != DisputeStatus.OPEN:
            raise InvalidStateError(
                "Only OPEN disputes can be taken under review", current_status=dispute.status
            )

        dispute.status = DisputeStatus.UNDER_REVIEW
        await log_event(
            db=db,
            action=AuditAction.DISPUTE_UNDER_REVIEW,
            actor_id=admin["user_id"],
            actor_username=admin.get("sub"),
            entity_type="dispute",
            entity_id=dispute.id
        )
        await db.commit()
        return dispute

    @staticmethod
    async def resolve(
        db: AsyncSession,
        gateway: BasePaymentGateway,
        dispute_id: int,
        outcome: DisputeOutcome,
        note: Optional[str],
        admin: dict
    ) -> Dispute:
        """
        Apply an admin verdict.

        RESOLVE_FORWARD resumes the frozen state with checklist and
        acceptance flags untouched. RESOLVE_CANCEL cancels with a refund of
        whatever is still held; a failed refund leaves the dispute open.
        """
        dispute = await _load_dispute(db, dispute_id)
        if dispute.status not in UNRESOLVED:
            raise InvalidStateError("Dispute is already resolved", current_status=dispute.status)

        assignment = await load_assignment(db, dispute.assignment_id)
        ensure_idle(assignment)
        if assignment.status != AssignmentStatus.DISPUTED:
            raise InvalidStateError(
                "Assignment is not frozen by this dispute", current_status=assignment.status
            )

        allowed = resume_targets(dispute.previous_status)
        target = dispute.previous_status if outcome == DisputeOutcome.RESOLVE_FORWARD else AssignmentStatus.CANCELLED
        if target not in allowed:
            raise InvalidStateError(f"Verdict cannot move assignment to {target.value}")

        admin_id = admin["user_id"]

        async def close_dispute(resolved: Assignment) -> None:
            dispute.status = DisputeStatus.RESOLVED
            dispute.resolution_verdict = outcome
            dispute.resolution_note = note
            dispute.resolved_by_admin_id = admin_id
            dispute.resolved_at = datetime.utcnow()

            package = await load_package(db, resolved.package_id)
            trip = await load_trip(db, resolved.trip_id)
            await NotificationService.emit(
                db, NotificationEvent.DISPUTE_RESOLVED, parties(package, trip),
                {"assignment_id": resolved.id, "dispute_id": dispute.id, "outcome": outcome.value}
            )
            await log_event(
                db=db,
                action=AuditAction.DISPUTE_RESOLVED,
                actor_id=admin_id,
                actor_username=admin.get("sub"),
                entity_type="dispute",
                entity_id=dispute.id,
                metadata={
                    "assignment_id": resolved.id,
                    "outcome": outcome.value,
                    "assignment_status": resolved.status.value
                }
            )

        if outcome == DisputeOutcome.RESOLVE_FORWARD:
            package = await load_package(db, assignment.package_id, lock=True)
            set_status(db, assignment, package, target, note or "Dispute resolved", checked=False)
            await close_dispute(assignment)
            await commit_or_conflict(db)
        else:
            await cancel_with_refund(
                db, gateway, assignment, note or "Cancelled by dispute verdict", admin_id,
                checked=False, on_cancelled=close_dispute
            )

        return dispute
