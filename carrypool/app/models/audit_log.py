"""
Audit Log Database Model.

Tracks lifecycle and money-moving actions for compliance.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from carrypool.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model.

    Events logged:
    - Assignment transitions (match, accept, pickup, delivery, cancel)
    - Safety checklist corrections (true -> false) with the acting user
    - Dispute raised / resolved
    - Refunds issued by admins
    - Queued cancellations that were dropped
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_id = Column(Integer, index=True, nullable=True)
    actor_username = Column(String(100), nullable=True)

    action = Column(String(100), nullable=False, index=True)

    # What it was performed on
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(Integer, index=True, nullable=True)

    meta_data = Column(JSON, nullable=True)

    ip_address = Column(String(50), nullable=True)

    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', entity={self.entity_type}:{self.entity_id})>"
