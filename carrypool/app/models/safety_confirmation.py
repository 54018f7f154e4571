"""
Safety confirmation records.
"""

from sqlalchemy import Column, Integer, Boolean, ForeignKey, DateTime, Enum
from sqlalchemy.sql import func
from carrypool.app.db.session import Base
from carrypool.app.models.safety_enums import SafetyEvent, SafetyItem


class SafetyConfirmation(Base):
    """
    Append-only record of every checklist write, including corrections.
    """
    __tablename__ = "safety_confirmations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    assignment_id = Column(Integer, ForeignKey('assignments.id'), nullable=False, index=True)
    event = Column(Enum(SafetyEvent), nullable=False)
    item = Column(Enum(SafetyItem), nullable=False)
    value = Column(Boolean, nullable=False)
    previous_value = Column(Boolean, nullable=True)
    confirmed_by_user_id = Column(Integer, ForeignKey('users.id'), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<SafetyConfirmation(assignment={self.assignment_id}, {self.event.value}.{self.item.value}={self.value})>"
