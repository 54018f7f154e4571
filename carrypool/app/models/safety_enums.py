"""
Safety confirmation enumerations.
"""

import enum


class SafetyEvent(str, enum.Enum):
    """Handover moments that carry a checklist."""
    ASSIGNMENT = "ASSIGNMENT"
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"


class SafetyItem(str, enum.Enum):
    """Checklist items. Which ones are required depends on the event."""
    # Pickup / delivery
    IDENTITY_VERIFIED = "identity_verified"
    PACKAGE_CONDITION_OK = "package_condition_ok"
    LOCATION_CONFIRMED = "location_confirmed"
    PHOTO_TAKEN = "photo_taken"
    SIGNATURE_OBTAINED = "signature_obtained"

    # Assignment
    LEGAL_COMPLIANCE = "legal_compliance"
    DAMAGE_INSPECTION = "damage_inspection"
    ACCURATE_DESCRIPTION = "accurate_description"
    SAFETY_MEASURES = "safety_measures"
    TERMS_ACCEPTANCE = "terms_acceptance"


class ChecklistStatus(str, enum.Enum):
    """Progress of a checklist against its required items."""
    INCOMPLETE = "incomplete"  # < 50%
    PARTIAL = "partial"  # >= 50%, < 100%
    COMPLETE = "complete"  # 100%
