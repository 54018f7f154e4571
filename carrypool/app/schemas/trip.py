"""
Trip Pydantic schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List
from carrypool.app.core.config import settings
from carrypool.app.models.package_enums import PackageType
from carrypool.app.models.trip_enums import TripStatus
from carrypool.app.schemas.package import Address


class TripCreate(BaseModel):
    """Schema for posting a trip with spare capacity."""
    title: str = Field(..., min_length=1, max_length=200)
    origin_address: Address
    destination_address: Address
    departure_date: date
    arrival_date: Optional[date] = None
    max_weight_kg: Decimal = Field(..., gt=0, max_digits=7, decimal_places=3, description="Capacity in kilograms")
    max_length_cm: Optional[int] = Field(None, gt=0)
    max_width_cm: Optional[int] = Field(None, gt=0)
    max_height_cm: Optional[int] = Field(None, gt=0)
    accepted_package_types: List[PackageType] = Field(default_factory=list, description="Empty accepts all types")
    restrictions: List[str] = Field(default_factory=list)
    currency: str = Field(default=settings.default_currency, min_length=3, max_length=3)
    price_per_kg: Optional[int] = Field(None, gt=0, description="Minor units per kilogram")
    min_price: Optional[int] = Field(None, gt=0)
    max_price: Optional[int] = Field(None, gt=0)


class TripResponse(BaseModel):
    """Schema for trip response."""
    id: int
    traveler_id: int
    title: str
    origin_address: dict
    destination_address: dict
    departure_date: date
    arrival_date: Optional[date]
    max_weight_g: int
    available_space_g: int
    max_length_cm: Optional[int]
    max_width_cm: Optional[int]
    max_height_cm: Optional[int]
    accepted_package_types: List[PackageType]
    restrictions: List[str]
    currency: str
    price_per_kg: Optional[int]
    min_price: Optional[int]
    max_price: Optional[int]
    status: TripStatus
    version: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
