"""
Dispute database model.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum
from sqlalchemy.sql import func
from carrypool.app.db.session import Base
from carrypool.app.models.assignment_enums import AssignmentStatus
from carrypool.app.models.dispute_enums import DisputeStatus, DisputeOutcome


class Dispute(Base):
    """
    Dispute overlay on an assignment.

    `previous_status` is the assignment state at freeze time; a forward
    verdict resumes exactly there.
    """
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    assignment_id = Column(Integer, ForeignKey('assignments.id'), nullable=False, index=True)
    raised_by_user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    reason = Column(String(2000), nullable=False)

    status = Column(Enum(DisputeStatus), default=DisputeStatus.OPEN, nullable=False, index=True)
    previous_status = Column(Enum(AssignmentStatus), nullable=False)

    # Verdict
    resolution_verdict = Column(Enum(DisputeOutcome), nullable=True)
    resolution_note = Column(String(2000), nullable=True)
    resolved_by_admin_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Dispute(id={self.id}, assignment={self.assignment_id}, status='{self.status.value}')>"
