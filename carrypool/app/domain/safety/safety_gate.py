"""
Safety Confirmation Gate.

Checklist evaluator per handover event. The gate only records and
evaluates; it never moves the assignment. Transitions ask it via
ensure_complete().
"""

from typing import Dict, FrozenSet, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from carrypool.app.core.exceptions import (
    ChecklistIncompleteError, ChecklistItemNotApplicableError, InvalidStateError
)
from carrypool.app.domain.assignment.state_machine import ensure_idle, is_terminal
from carrypool.app.models.assignment import Assignment
from carrypool.app.models.assignment_enums import AssignmentStatus
from carrypool.app.models.safety_confirmation import SafetyConfirmation
from carrypool.app.models.safety_enums import SafetyEvent, SafetyItem, ChecklistStatus
from carrypool.app.models.notification import NotificationEvent
from carrypool.app.services.audit import log_event, AuditAction
from carrypool.app.services.notification_service import NotificationService

_HANDOVER_ITEMS = frozenset({
    SafetyItem.IDENTITY_VERIFIED,
    SafetyItem.PACKAGE_CONDITION_OK,
    SafetyItem.LOCATION_CONFIRMED,
    SafetyItem.PHOTO_TAKEN,
})

REQUIRED_ITEMS: Dict[SafetyEvent, FrozenSet[SafetyItem]] = {
    SafetyEvent.ASSIGNMENT: frozenset({
        SafetyItem.LEGAL_COMPLIANCE,
        SafetyItem.DAMAGE_INSPECTION,
        SafetyItem.ACCURATE_DESCRIPTION,
        SafetyItem.SAFETY_MEASURES,
        SafetyItem.TERMS_ACCEPTANCE,
    }),
    SafetyEvent.PICKUP: _HANDOVER_ITEMS,
    SafetyEvent.DELIVERY: _HANDOVER_ITEMS | {SafetyItem.SIGNATURE_OBTAINED},
}

# Assignment states in which each checklist can be filled in
RECORDABLE_IN: Dict[SafetyEvent, FrozenSet[AssignmentStatus]] = {
    SafetyEvent.ASSIGNMENT: frozenset({
        AssignmentStatus.PROPOSED, AssignmentStatus.NEGOTIATING,
        AssignmentStatus.MATCHED, AssignmentStatus.CONFIRMED,
    }),
    SafetyEvent.PICKUP: frozenset({AssignmentStatus.MATCHED, AssignmentStatus.CONFIRMED}),
    SafetyEvent.DELIVERY: frozenset({AssignmentStatus.IN_TRANSIT}),
}


def event_items(checklist: Optional[dict], event: SafetyEvent) -> Dict[SafetyItem, bool]:
    """Typed view of one event's recorded items. Unknown keys are ignored."""
    raw = (checklist or {}).get(event.value, {})
    required = REQUIRED_ITEMS[event]
    items = {}
    for key, value in raw.items():
        try:
            item = SafetyItem(key)
        except ValueError:
            continue
        if item in required:
            items[item] = bool(value)
    return items


def evaluate(checklist: Optional[dict], event: SafetyEvent) -> ChecklistStatus:
    """
    incomplete: fewer than half the required items true
    partial: at least half, not all
    complete: all required items true
    """
    required = REQUIRED_ITEMS[event]
    recorded = event_items(checklist, event)
    confirmed = sum(1 for item in required if recorded.get(item, False))

    if confirmed == len(required):
        return ChecklistStatus.COMPLETE
    if confirmed * 2 >= len(required):
        return ChecklistStatus.PARTIAL
    return ChecklistStatus.INCOMPLETE


def missing_items(checklist: Optional[dict], event: SafetyEvent) -> List[str]:
    recorded = event_items(checklist, event)
    return sorted(item.value for item in REQUIRED_ITEMS[event] if not recorded.get(item, False))


def summarize(checklist: Optional[dict]) -> Dict[str, str]:
    """Status per event, for the assignment snapshot."""
    return {event.value: evaluate(checklist, event).value for event in SafetyEvent}


def ensure_complete(assignment: Assignment, event: SafetyEvent) -> None:
    """
    Raises:
        ChecklistIncompleteError: Gate not at `complete`
    """
    checklist_status = evaluate(assignment.safety_checklist, event)
    if checklist_status != ChecklistStatus.COMPLETE:
        raise ChecklistIncompleteError(
            event, checklist_status, missing_items(assignment.safety_checklist, event)
        )


class SafetyGateService:

    @staticmethod
    async def record_confirmation(
        db: AsyncSession,
        assignment: Assignment,
        event: SafetyEvent,
        item: SafetyItem,
        value: bool,
        confirmed_by_user_id: int,
        confirmed_by_username: Optional[str] = None,
        recipients: Optional[List[int]] = None
    ) -> ChecklistStatus:
        """
        Record one checklist item on a locked assignment row. Caller commits.
        Rejected while a gateway call holds the row, so a gate cannot change
        between the check and the transition it guards.

        A true -> false correction is allowed and audit-logged with the
        acting user. Emits SAFETY_GATE_COMPLETE when the event first
        reaches `complete`.
        """
        if item not in REQUIRED_ITEMS[event]:
            raise ChecklistItemNotApplicableError(event, item)
        ensure_idle(assignment)

        if assignment.status == AssignmentStatus.DISPUTED or is_terminal(assignment.status):
            raise InvalidStateError(
                f"Cannot record safety confirmations while {assignment.status.value}",
                current_status=assignment.status
            )
        if assignment.status not in RECORDABLE_IN[event]:
            raise InvalidStateError(
                f"{event.value} checklist cannot be recorded while {assignment.status.value}",
                current_status=assignment.status
            )

        before = evaluate(assignment.safety_checklist, event)
        previous_value = event_items(assignment.safety_checklist, event).get(item)

        # JSON column: assign a fresh dict so the change is tracked
        checklist = {k: dict(v) for k, v in (assignment.safety_checklist or {}).items()}
        checklist.setdefault(event.value, {})[item.value] = value
        assignment.safety_checklist = checklist

        db.add(SafetyConfirmation(
            assignment_id=assignment.id,
            event=event,
            item=item,
            value=value,
            previous_value=previous_value,
            confirmed_by_user_id=confirmed_by_user_id
        ))

        if previous_value is True and value is False:
            await log_event(
                db=db,
                action=AuditAction.SAFETY_CONFIRMATION_CORRECTED,
                actor_id=confirmed_by_user_id,
                actor_username=confirmed_by_username,
                entity_type="assignment",
                entity_id=assignment.id,
                metadata={"event": event.value, "item": item.value, "previous_value": True, "value": False}
            )

        after = evaluate(assignment.safety_checklist, event)
        if after == ChecklistStatus.COMPLETE and before != ChecklistStatus.COMPLETE:
            await NotificationService.emit(
                db,
                NotificationEvent.SAFETY_GATE_COMPLETE,
                recipients or [],
                {"assignment_id": assignment.id, "event": event.value}
            )

        await db.flush()
        return after
