"""
Assignment lifecycle enumerations.
"""

import enum


class AssignmentStatus(str, enum.Enum):
    """
    Assignment status enumeration.

    Status flow:
        PROPOSED → NEGOTIATING → MATCHED → CONFIRMED → IN_TRANSIT → DELIVERED
        PROPOSED/NEGOTIATING/MATCHED/CONFIRMED → CANCELLED
        MATCHED/CONFIRMED/IN_TRANSIT → DISPUTED → (previous | CANCELLED)
    """
    PROPOSED = "PROPOSED"
    NEGOTIATING = "NEGOTIATING"
    MATCHED = "MATCHED"
    CONFIRMED = "CONFIRMED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class PendingOperation(str, enum.Enum):
    """Gateway call reserved by an assignment and not yet finalized."""
    AUTHORIZING = "AUTHORIZING"
    CAPTURING = "CAPTURING"
    REFUNDING = "REFUNDING"
