"""
Price proposal history.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum
from sqlalchemy.sql import func
from carrypool.app.db.session import Base
from carrypool.app.models.enums import Party


class PriceProposal(Base):
    """
    One row per proposal. Append-only; the current price lives on the assignment.
    """
    __tablename__ = "price_proposals"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    assignment_id = Column(Integer, ForeignKey('assignments.id'), nullable=False, index=True)
    party = Column(Enum(Party), nullable=False)
    proposed_by_user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    price = Column(Integer, nullable=False)
    note = Column(String(1000), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<PriceProposal(assignment={self.assignment_id}, party='{self.party.value}', price={self.price})>"
