"""
Package Pydantic schemas.

Prices are integer minor units of `currency`; weight is taken in
kilograms and stored in grams.
"""

from pydantic import BaseModel, Field
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List
from carrypool.app.core.config import settings
from carrypool.app.models.package_enums import PackageStatus, PackageType


class Address(BaseModel):
    """Free-form address; coordinates are optional."""
    line1: str = Field(..., min_length=1, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    country: str = Field(..., min_length=2, max_length=2, description="ISO 3166-1 alpha-2")
    postal_code: Optional[str] = Field(None, max_length=20)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class PackageCreate(BaseModel):
    """Schema for posting a new package."""
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    package_type: PackageType = PackageType.OTHER
    weight_kg: Decimal = Field(..., gt=0, max_digits=7, decimal_places=3, description="Weight in kilograms")
    length_cm: int = Field(..., gt=0, description="Length in centimeters")
    width_cm: int = Field(..., gt=0, description="Width in centimeters")
    height_cm: int = Field(..., gt=0, description="Height in centimeters")
    declared_value: int = Field(default=0, ge=0, description="Declared value in minor units")
    pickup_address: Address
    delivery_address: Address
    pickup_date: Optional[date] = None
    delivery_deadline: Optional[date] = None
    currency: str = Field(default=settings.default_currency, min_length=3, max_length=3)
    offered_price: int = Field(..., gt=0, description="Offered price in minor units")


class PackageResponse(BaseModel):
    """Schema for package response."""
    id: int
    sender_id: int
    title: str
    description: Optional[str]
    package_type: PackageType
    weight_g: int
    length_cm: int
    width_cm: int
    height_cm: int
    declared_value: int
    pickup_address: dict
    delivery_address: dict
    pickup_date: Optional[date]
    delivery_deadline: Optional[date]
    currency: str
    offered_price: int
    final_price: Optional[int]
    trip_id: Optional[int]
    assignment_id: Optional[int]
    status: PackageStatus
    is_active: bool
    version: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TrackingEventResponse(BaseModel):
    id: int
    package_id: int
    assignment_id: Optional[int]
    event: str
    description: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class PackageTrackingResponse(BaseModel):
    package_id: int
    status: PackageStatus
    events: List[TrackingEventResponse]
