"""
Trip database model.

Travelers post trips with spare carrying capacity.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Date, Enum, JSON
from sqlalchemy.sql import func
from carrypool.app.db.session import Base
from carrypool.app.models.trip_enums import TripStatus


class Trip(Base):
    """
    Trip model.

    `available_space_g` is a stored counter. It is only changed by the
    assignment engine under the trip row lock, and bound weight never
    exceeds `max_weight_g`.
    """
    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Ownership
    traveler_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    title = Column(String(200), nullable=False)

    # Route and window
    origin_address = Column(JSON, nullable=False)
    destination_address = Column(JSON, nullable=False)
    departure_date = Column(Date, nullable=False)
    arrival_date = Column(Date, nullable=True)

    # Capacity
    max_weight_g = Column(Integer, nullable=False)
    available_space_g = Column(Integer, nullable=False)
    max_length_cm = Column(Integer, nullable=True)
    max_width_cm = Column(Integer, nullable=True)
    max_height_cm = Column(Integer, nullable=True)
    accepted_package_types = Column(JSON, nullable=False, default=list)  # Empty = accepts all
    restrictions = Column(JSON, nullable=False, default=list)

    # Pricing (minor units)
    currency = Column(String(3), nullable=False)
    price_per_kg = Column(Integer, nullable=True)
    min_price = Column(Integer, nullable=True)
    max_price = Column(Integer, nullable=True)

    status = Column(Enum(TripStatus), default=TripStatus.ACTIVE, nullable=False, index=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Trip(id={self.id}, available_g={self.available_space_g}, status='{self.status.value}')>"
