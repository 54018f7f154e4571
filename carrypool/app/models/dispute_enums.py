"""
Dispute enumerations.
"""

import enum


class DisputeStatus(str, enum.Enum):
    """Dispute status enumeration."""
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED = "RESOLVED"


class DisputeOutcome(str, enum.Enum):
    """Verdict outcomes an admin can inject."""
    RESOLVE_FORWARD = "RESOLVE_FORWARD"  # Resume from the frozen state
    RESOLVE_CANCEL = "RESOLVE_CANCEL"  # Cancel and refund
