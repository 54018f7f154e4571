"""
Trip API Endpoints.

Travelers post trips with spare carrying capacity.
"""

from fastapi import APIRouter, Depends, HTTPException, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from carrypool.app.db.session import get_db
from carrypool.app.models.trip import Trip
from carrypool.app.models.enums import UserRole
from carrypool.app.schemas.trip import TripCreate, TripResponse
from carrypool.app.core.dependencies import get_current_user
from carrypool.app.core.guards import require_role
from carrypool.app.core.money import to_grams
from carrypool.app.domain.assignment.assignment_service import load_trip
from carrypool.app.services.audit import log_event, AuditAction

router = APIRouter(prefix="/trips", tags=["Trips"])


@router.post("", response_model=TripResponse, status_code=status.HTTP_201_CREATED)
async def create_trip(
    trip_data: TripCreate,
    current_user: dict = Depends(require_role([UserRole.USER])),
    db: AsyncSession = Depends(get_db)
):
    """
    Post a trip (traveler).

    The whole capacity starts available.
    """
    if trip_data.arrival_date and trip_data.arrival_date < trip_data.departure_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Arrival date cannot be before departure date"
        )
    if trip_data.min_price and trip_data.max_price and trip_data.min_price > trip_data.max_price:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="min_price cannot exceed max_price"
        )

    max_weight_g = to_grams(trip_data.max_weight_kg)
    trip = Trip(
        traveler_id=current_user["user_id"],
        title=trip_data.title,
        origin_address=trip_data.origin_address.model_dump(),
        destination_address=trip_data.destination_address.model_dump(),
        departure_date=trip_data.departure_date,
        arrival_date=trip_data.arrival_date,
        max_weight_g=max_weight_g,
        available_space_g=max_weight_g,
        max_length_cm=trip_data.max_length_cm,
        max_width_cm=trip_data.max_width_cm,
        max_height_cm=trip_data.max_height_cm,
        accepted_package_types=[t.value for t in trip_data.accepted_package_types],
        restrictions=trip_data.restrictions,
        currency=trip_data.currency.upper(),
        price_per_kg=trip_data.price_per_kg,
        min_price=trip_data.min_price,
        max_price=trip_data.max_price
    )

    db.add(trip)
    await db.flush()

    await log_event(
        db=db,
        action=AuditAction.TRIP_CREATED,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub"),
        entity_type="trip",
        entity_id=trip.id,
        metadata={"max_weight_g": max_weight_g}
    )

    await db.commit()
    await db.refresh(trip)
    return trip


@router.get("/{trip_id}", response_model=TripResponse)
async def get_trip(
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get a trip with its remaining capacity."""
    return await load_trip(db, trip_id)
