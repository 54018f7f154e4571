"""
Trip-related enumerations.
"""

import enum


class TripStatus(str, enum.Enum):
    """Trip status enumeration."""
    ACTIVE = "ACTIVE"  # Open for package matching
    COMPLETED = "COMPLETED"  # Traveler arrived
    CANCELLED = "CANCELLED"  # Trip withdrawn
