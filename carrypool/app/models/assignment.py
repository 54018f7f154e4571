"""
Assignment database model.

Binds one package to one trip and carries the lifecycle state.
"""

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, Enum, JSON
from sqlalchemy.sql import func
from carrypool.app.db.session import Base
from carrypool.app.models.assignment_enums import AssignmentStatus, PendingOperation
from carrypool.app.models.enums import Party


class Assignment(Base):
    """
    Assignment model.

    A package may be proposed to many trips but bound to at most one.
    `agreed_price` is written once, when authorization succeeds after both
    parties confirmed. `version` drives optimistic concurrency.
    """
    __tablename__ = "assignments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    package_id = Column(Integer, ForeignKey('packages.id'), nullable=False, index=True)
    trip_id = Column(Integer, ForeignKey('trips.id'), nullable=False, index=True)
    requested_by_user_id = Column(Integer, ForeignKey('users.id'), nullable=False)

    status = Column(Enum(AssignmentStatus), default=AssignmentStatus.PROPOSED, nullable=False, index=True)

    # Negotiation
    proposed_price = Column(Integer, nullable=False)
    proposed_by = Column(Enum(Party), nullable=False)
    agreed_price = Column(Integer, nullable=True)
    confirmed_by_sender = Column(Boolean, default=False, nullable=False)
    confirmed_by_traveler = Column(Boolean, default=False, nullable=False)
    payment_method_id = Column(String(100), nullable=True)

    # Commitment to proceed to handover
    accepted_by_sender = Column(Boolean, default=False, nullable=False)
    accepted_by_traveler = Column(Boolean, default=False, nullable=False)

    # {event: {item: bool}}
    safety_checklist = Column(JSON, nullable=False, default=dict)

    # Cancellation
    cancel_reason = Column(String(500), nullable=True)
    cancel_requested = Column(Boolean, default=False, nullable=False)
    cancel_requested_by_user_id = Column(Integer, nullable=True)

    # In-flight gateway call
    pending_operation = Column(Enum(PendingOperation), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    matched_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    picked_up_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Assignment(id={self.id}, package={self.package_id}, trip={self.trip_id}, status='{self.status.value}')>"
