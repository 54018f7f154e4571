"""
Package API Endpoints.

Senders post packages and follow their tracking timeline.
"""

from fastapi import APIRouter, Depends, Path, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from carrypool.app.db.session import get_db
from carrypool.app.models.package import Package
from carrypool.app.models.tracking_event import TrackingEvent
from carrypool.app.models.enums import UserRole
from carrypool.app.schemas.package import PackageCreate, PackageResponse, PackageTrackingResponse
from carrypool.app.core.dependencies import get_current_user
from carrypool.app.core.exceptions import InsufficientPermissionsError
from carrypool.app.core.guards import require_role
from carrypool.app.core.money import to_grams
from carrypool.app.domain.assignment.assignment_service import AssignmentService, load_package, load_trip
from carrypool.app.services.audit import log_event, AuditAction

router = APIRouter(prefix="/packages", tags=["Packages"])


@router.post("", response_model=PackageResponse, status_code=status.HTTP_201_CREATED)
async def create_package(
    package_data: PackageCreate,
    current_user: dict = Depends(require_role([UserRole.USER])),
    db: AsyncSession = Depends(get_db)
):
    """
    Post a package (sender).

    Weight is converted to grams; the package starts POSTED and unbound.
    """
    package = Package(
        sender_id=current_user["user_id"],
        title=package_data.title,
        description=package_data.description,
        package_type=package_data.package_type,
        weight_g=to_grams(package_data.weight_kg),
        length_cm=package_data.length_cm,
        width_cm=package_data.width_cm,
        height_cm=package_data.height_cm,
        declared_value=package_data.declared_value,
        pickup_address=package_data.pickup_address.model_dump(),
        delivery_address=package_data.delivery_address.model_dump(),
        pickup_date=package_data.pickup_date,
        delivery_deadline=package_data.delivery_deadline,
        currency=package_data.currency.upper(),
        offered_price=package_data.offered_price
    )

    db.add(package)
    await db.flush()

    await log_event(
        db=db,
        action=AuditAction.PACKAGE_CREATED,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub"),
        entity_type="package",
        entity_id=package.id,
        metadata={"weight_g": package.weight_g, "offered_price": package.offered_price}
    )

    await db.commit()
    await db.refresh(package)
    return package


@router.get("/{package_id}", response_model=PackageResponse)
async def get_package(
    package_id: int = Path(..., description="Package ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get a package. Posted packages are visible to every member."""
    return await load_package(db, package_id)


@router.post("/{package_id}/cancel", response_model=PackageResponse)
async def cancel_package(
    package_id: int = Path(..., description="Package ID"),
    current_user: dict = Depends(require_role([UserRole.USER])),
    db: AsyncSession = Depends(get_db)
):
    """
    Withdraw a package that is not matched yet.
    Its open proposals are cancelled with it.
    """
    package = await AssignmentService.cancel_package(db, package_id, current_user["user_id"])
    await db.refresh(package)
    return package


@router.get("/{package_id}/tracking", response_model=PackageTrackingResponse)
async def get_package_tracking(
    package_id: int = Path(..., description="Package ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Tracking timeline (sender, bound traveler or admin).
    """
    package = await load_package(db, package_id)

    allowed = current_user.get("role") == UserRole.ADMIN.value or current_user["user_id"] == package.sender_id
    if not allowed and package.trip_id is not None:
        trip = await load_trip(db, package.trip_id)
        allowed = current_user["user_id"] == trip.traveler_id
    if not allowed:
        raise InsufficientPermissionsError("Only the sender or the carrying traveler can track this package")

    result = await db.execute(
        select(TrackingEvent)
        .where(TrackingEvent.package_id == package.id)
        .order_by(TrackingEvent.id)
    )
    return PackageTrackingResponse(
        package_id=package.id,
        status=package.status,
        events=result.scalars().all()
    )
