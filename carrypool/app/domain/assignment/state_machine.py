"""
Assignment State Machine.

Pure transition table for assignment status. Preconditions that need data
(checklists, confirmations, payment state) are enforced by the service;
this module answers "is this edge legal from here" and "is a gateway call
holding this row".
"""

from typing import Dict, FrozenSet

from carrypool.app.core.exceptions import ConcurrentModificationError, InvalidStateError
from carrypool.app.models.assignment import Assignment
from carrypool.app.models.assignment_enums import AssignmentStatus as S

TRANSITIONS: Dict[S, FrozenSet[S]] = {
    S.PROPOSED: frozenset({S.NEGOTIATING, S.CANCELLED}),
    S.NEGOTIATING: frozenset({S.MATCHED, S.CANCELLED}),
    S.MATCHED: frozenset({S.CONFIRMED, S.CANCELLED, S.DISPUTED}),
    S.CONFIRMED: frozenset({S.IN_TRANSIT, S.CANCELLED, S.DISPUTED}),
    # Package is moving: no direct cancel, only a dispute
    S.IN_TRANSIT: frozenset({S.DELIVERED, S.DISPUTED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
    # Only reachable through a verdict, see resume_targets()
    S.DISPUTED: frozenset(),
}

TERMINAL_STATES: FrozenSet[S] = frozenset({S.DELIVERED, S.CANCELLED})

NEGOTIABLE_STATES: FrozenSet[S] = frozenset({S.PROPOSED, S.NEGOTIATING})

DISPUTABLE_STATES: FrozenSet[S] = frozenset({S.MATCHED, S.CONFIRMED, S.IN_TRANSIT})

# States in which the package weight is held against the trip
CAPACITY_HOLDING_STATES: FrozenSet[S] = frozenset({
    S.MATCHED, S.CONFIRMED, S.IN_TRANSIT, S.DELIVERED, S.DISPUTED
})


def is_terminal(status: S) -> bool:
    return status in TERMINAL_STATES


def can_transition(current: S, target: S) -> bool:
    return target in TRANSITIONS[current]


def ensure_idle(assignment: Assignment) -> None:
    """Reject any write while a gateway call reserved by this row is in flight."""
    if assignment.pending_operation is not None:
        raise ConcurrentModificationError(
            f"A {assignment.pending_operation.value.lower()} call is in progress, please refresh",
            details={"pending_operation": assignment.pending_operation.value}
        )


def ensure_transition(current: S, target: S) -> None:
    """
    Raise InvalidStateError unless `current -> target` is a legal edge.

    DISPUTED has no outgoing edges here, so every ordinary trigger on a
    frozen assignment fails; verdicts go through resume_targets().
    """
    if current == S.DISPUTED:
        raise InvalidStateError(
            "Assignment is frozen by an open dispute; only a verdict can move it",
            current_status=current
        )
    if not can_transition(current, target):
        raise InvalidStateError(
            f"Cannot move assignment from {current.value} to {target.value}",
            current_status=current
        )


def resume_targets(previous: S) -> FrozenSet[S]:
    """Legal exits from DISPUTED given the state the dispute froze."""
    if previous not in DISPUTABLE_STATES:
        raise InvalidStateError(
            f"Dispute recorded an invalid pre-dispute state {previous.value}",
            current_status=S.DISPUTED
        )
    return frozenset({previous, S.CANCELLED})
