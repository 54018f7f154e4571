"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from carrypool.app.api.v1.endpoints import (
    packages, trips, assignments,
    admin_disputes, admin_transactions, admin_ops,
    notifications, payment_callbacks
)

router = APIRouter()

# Marketplace listings
router.include_router(packages.router)
router.include_router(trips.router)

# Assignment engine
router.include_router(assignments.router)

# Admin endpoints
router.include_router(admin_disputes.router)
router.include_router(admin_transactions.router)
router.include_router(admin_ops.router)

# Notifications
router.include_router(notifications.router)

# Gateway callbacks
router.include_router(payment_callbacks.router)
