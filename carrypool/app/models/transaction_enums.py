"""
Transaction ledger enumerations.
"""

import enum


class TransactionType(str, enum.Enum):
    """Ledger entry type enumeration."""
    PAYMENT = "PAYMENT"  # Sender funds held in escrow
    REFUND = "REFUND"  # Money returned to sender (or voided authorization)
    PAYOUT = "PAYOUT"  # Traveler earnings
    COMMISSION = "COMMISSION"  # Platform fee retained


class TransactionStatus(str, enum.Enum):
    """Transaction status enumeration."""
    PENDING = "PENDING"  # Authorized, not captured
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"  # Final, never mutated afterwards
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"  # Authorization voided before capture
