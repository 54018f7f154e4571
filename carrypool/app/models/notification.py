"""
Notification outbox model.

The assignment engine writes events here; the notification layer formats
and fans them out to email/SMS/push.
"""

from sqlalchemy import Column, Integer, Boolean, DateTime, ForeignKey, JSON, Enum
from sqlalchemy.sql import func
from carrypool.app.db.session import Base
import enum


class NotificationEvent(str, enum.Enum):
    ASSIGNMENT_PROPOSED = "ASSIGNMENT_PROPOSED"
    PRICE_PROPOSED = "PRICE_PROPOSED"
    ASSIGNMENT_MATCHED = "ASSIGNMENT_MATCHED"
    ASSIGNMENT_CONFIRMED = "ASSIGNMENT_CONFIRMED"
    SAFETY_GATE_COMPLETE = "SAFETY_GATE_COMPLETE"
    ASSIGNMENT_IN_TRANSIT = "ASSIGNMENT_IN_TRANSIT"
    ASSIGNMENT_CANCELLED = "ASSIGNMENT_CANCELLED"
    ASSIGNMENT_DISPUTED = "ASSIGNMENT_DISPUTED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
    SETTLEMENT_COMPLETED = "SETTLEMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"


class Notification(Base):
    """
    One outbox row per recipient per emitted event.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Recipient
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    event_type = Column(Enum(NotificationEvent), nullable=False, index=True)
    payload = Column(JSON, nullable=True)

    # State
    is_read = Column(Boolean, default=False, nullable=False, index=True)
    read_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Notification(id={self.id}, user={self.user_id}, event='{self.event_type.value}')>"
