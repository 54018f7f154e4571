"""
Notification Schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional, Dict, Any
from carrypool.app.models.notification import NotificationEvent


class NotificationResponse(BaseModel):
    id: int
    event_type: NotificationEvent
    payload: Optional[Dict[str, Any]]
    is_read: bool
    created_at: datetime
    read_at: Optional[datetime]

    class Config:
        from_attributes = True
