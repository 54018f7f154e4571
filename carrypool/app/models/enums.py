"""
User roles and assignment party enumerations.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        USER: Marketplace member; sender on their packages, traveler on their trips
        ADMIN: Platform operator, resolves disputes and issues refunds
    """
    USER = "USER"
    ADMIN = "ADMIN"


class Party(str, enum.Enum):
    """Side of an assignment a user acts for."""
    SENDER = "SENDER"  # Owns the package, pays
    TRAVELER = "TRAVELER"  # Owns the trip, carries and gets paid
