"""
Package tracking events.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime
from sqlalchemy.sql import func
from carrypool.app.db.session import Base


class TrackingEvent(Base):
    """
    Timeline entry written on every assignment status change.
    """
    __tablename__ = "tracking_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    package_id = Column(Integer, ForeignKey('packages.id'), nullable=False, index=True)
    assignment_id = Column(Integer, ForeignKey('assignments.id'), nullable=True, index=True)
    event = Column(String(50), nullable=False)
    description = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<TrackingEvent(package={self.package_id}, event='{self.event}')>"
