"""
Address/Capacity Model.

Pure checks of a package's physical attributes against a trip's carrying
capacity. The authoritative weight check is repeated under the trip row
lock when the assignment is matched.
"""

from typing import Optional, Sequence

from carrypool.app.core.exceptions import CapacityExceededError, PackageNotAcceptedError
from carrypool.app.models.package import Package
from carrypool.app.models.trip import Trip
from carrypool.app.models.package_enums import PackageType


def accepts_package_type(accepted_types: Sequence[str], package_type: PackageType) -> bool:
    """An empty accepted list means the trip takes any type."""
    if not accepted_types:
        return True
    return package_type.value in {PackageType(t).value for t in accepted_types}


def fits_dimensions(
    package_dims: Sequence[int],
    trip_limits: Sequence[Optional[int]]
) -> bool:
    """
    Check that a box fits inside the trip's limits in some orientation.

    Both sides are compared largest-to-largest. A trip with no limits set
    is unconstrained; a partially set trip only constrains what is set.
    """
    limits = [limit for limit in trip_limits if limit is not None]
    if not limits:
        return True

    dims = sorted(package_dims, reverse=True)
    limits = sorted(limits, reverse=True)
    return all(dim <= limit for dim, limit in zip(dims, limits))


def has_room(trip: Trip, weight_g: int) -> bool:
    return trip.available_space_g >= weight_g


def ensure_compatible(package: Package, trip: Trip) -> None:
    """
    Validate that a package can be proposed to a trip.

    Raises:
        PackageNotAcceptedError: Type or dimensions not accepted
        CapacityExceededError: Weight exceeds remaining space
    """
    if package.currency != trip.currency:
        raise PackageNotAcceptedError(
            f"Trip {trip.id} is priced in {trip.currency}, package in {package.currency}",
            details={"trip_currency": trip.currency, "package_currency": package.currency}
        )

    if not accepts_package_type(trip.accepted_package_types or [], package.package_type):
        raise PackageNotAcceptedError(
            f"Trip {trip.id} does not accept {package.package_type.value} packages",
            details={"package_type": package.package_type.value,
                     "accepted_package_types": trip.accepted_package_types}
        )

    if not fits_dimensions(
        (package.length_cm, package.width_cm, package.height_cm),
        (trip.max_length_cm, trip.max_width_cm, trip.max_height_cm)
    ):
        raise PackageNotAcceptedError(
            f"Package {package.id} exceeds trip {trip.id} dimension limits",
            details={
                "package_cm": [package.length_cm, package.width_cm, package.height_cm],
                "trip_max_cm": [trip.max_length_cm, trip.max_width_cm, trip.max_height_cm],
            }
        )

    if package.weight_g > trip.max_weight_g or not has_room(trip, package.weight_g):
        raise CapacityExceededError(trip.id, package.weight_g, trip.available_space_g)


def reserve_capacity(trip: Trip, weight_g: int) -> None:
    """
    Decrement the trip's counter. Caller holds the trip row lock.

    Raises:
        CapacityExceededError: Not enough room left
    """
    if not has_room(trip, weight_g):
        raise CapacityExceededError(trip.id, weight_g, trip.available_space_g)
    trip.available_space_g = trip.available_space_g - weight_g


def restore_capacity(trip: Trip, weight_g: int) -> None:
    """Give reserved weight back, never above the trip maximum."""
    trip.available_space_g = min(trip.max_weight_g, trip.available_space_g + weight_g)
