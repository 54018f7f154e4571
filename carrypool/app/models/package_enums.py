"""
Package enumerations.
"""

import enum


class PackageStatus(str, enum.Enum):
    """
    Package status enumeration.

    Status flow:
        POSTED → MATCHED → CONFIRMED → IN_TRANSIT → DELIVERED
        Once bound, the status mirrors the assignment status.
        Unbound packages can be soft-cancelled (CANCELLED).
    """
    POSTED = "POSTED"
    MATCHED = "MATCHED"
    CONFIRMED = "CONFIRMED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"


class PackageType(str, enum.Enum):
    """Package content categories a trip can accept or refuse."""
    DOCUMENTS = "DOCUMENTS"
    ELECTRONICS = "ELECTRONICS"
    CLOTHING = "CLOTHING"
    FOOD = "FOOD"
    FRAGILE = "FRAGILE"
    OTHER = "OTHER"
