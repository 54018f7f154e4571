"""
Transaction ledger model.

Immutable escrow ledger entries.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum
from sqlalchemy.sql import func
from carrypool.app.db.session import Base
from carrypool.app.models.transaction_enums import TransactionType, TransactionStatus


class Transaction(Base):
    """
    Transaction model.

    Append-only record of money movement for an assignment.
    A COMPLETED row is never updated; corrections are new REFUND/PAYOUT rows.
    All amounts are integer minor units.
    """
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    type = Column(Enum(TransactionType), nullable=False, index=True)
    status = Column(Enum(TransactionStatus), default=TransactionStatus.PENDING, nullable=False, index=True)

    # Financials
    amount = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False, default=0)
    gateway_fee = Column(Integer, nullable=False, default=0)
    net_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)

    # Linkage
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    package_id = Column(Integer, ForeignKey('packages.id'), nullable=False, index=True)
    trip_id = Column(Integer, ForeignKey('trips.id'), nullable=False, index=True)
    assignment_id = Column(Integer, ForeignKey('assignments.id'), nullable=False, index=True)
    parent_transaction_id = Column(Integer, ForeignKey('transactions.id'), nullable=True)

    # Gateway
    payment_method_id = Column(String(100), nullable=True)
    gateway_txn_id = Column(String(100), nullable=True, index=True)

    description = Column(String(255), nullable=True)

    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Transaction(id={self.id}, type='{self.type.value}', status='{self.status.value}', amount={self.amount})>"
