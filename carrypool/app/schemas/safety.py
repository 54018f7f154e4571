"""
Safety checklist schemas.
"""

from pydantic import BaseModel
from typing import Dict
from carrypool.app.models.safety_enums import SafetyEvent, SafetyItem, ChecklistStatus


class SafetyConfirmationRequest(BaseModel):
    event: SafetyEvent
    item: SafetyItem
    value: bool = True


class SafetyConfirmationResponse(BaseModel):
    assignment_id: int
    event: SafetyEvent
    item: SafetyItem
    value: bool
    checklist_status: ChecklistStatus
    safety_checklist: Dict[str, Dict[str, bool]]
