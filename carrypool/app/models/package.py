"""
Package database model.

Senders post packages; once bound to a trip the assignment engine owns
the status and final price.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum, Date, Boolean, JSON
from sqlalchemy.sql import func
from carrypool.app.db.session import Base
from carrypool.app.models.package_enums import PackageStatus, PackageType


class Package(Base):
    """
    Package model.

    Weight is stored in grams and money in minor units so capacity and
    pricing arithmetic stays exact. Never hard-deleted.
    """
    __tablename__ = "packages"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Ownership
    sender_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    # Description
    title = Column(String(200), nullable=False)
    description = Column(String(1000), nullable=True)
    package_type = Column(Enum(PackageType), default=PackageType.OTHER, nullable=False)

    # Physical properties
    weight_g = Column(Integer, nullable=False)
    length_cm = Column(Integer, nullable=False)
    width_cm = Column(Integer, nullable=False)
    height_cm = Column(Integer, nullable=False)
    declared_value = Column(Integer, nullable=False, default=0)

    # Route and window
    pickup_address = Column(JSON, nullable=False)
    delivery_address = Column(JSON, nullable=False)
    pickup_date = Column(Date, nullable=True)
    delivery_deadline = Column(Date, nullable=True)

    # Pricing
    currency = Column(String(3), nullable=False)
    offered_price = Column(Integer, nullable=False)
    final_price = Column(Integer, nullable=True)

    # Binding (set by the assignment engine only)
    trip_id = Column(Integer, ForeignKey('trips.id'), nullable=True, index=True)
    assignment_id = Column(Integer, nullable=True, index=True)

    status = Column(Enum(PackageStatus), default=PackageStatus.POSTED, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Package(id={self.id}, title='{self.title}', status='{self.status.value}')>"
