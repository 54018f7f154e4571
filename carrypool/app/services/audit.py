"""
Audit logging service for lifecycle and money-moving actions.

Entries are added to the caller's transaction so the audit row commits
or rolls back together with the action it describes.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from carrypool.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    PACKAGE_CREATED = "PACKAGE_CREATED"
    PACKAGE_CANCELLED = "PACKAGE_CANCELLED"
    TRIP_CREATED = "TRIP_CREATED"

    ASSIGNMENT_REQUESTED = "ASSIGNMENT_REQUESTED"
    PRICE_PROPOSED = "PRICE_PROPOSED"
    PRICE_CONFIRMED = "PRICE_CONFIRMED"
    ASSIGNMENT_MATCHED = "ASSIGNMENT_MATCHED"
    ASSIGNMENT_ACCEPTED = "ASSIGNMENT_ACCEPTED"
    ASSIGNMENT_PICKED_UP = "ASSIGNMENT_PICKED_UP"
    ASSIGNMENT_DELIVERED = "ASSIGNMENT_DELIVERED"
    ASSIGNMENT_CANCELLED = "ASSIGNMENT_CANCELLED"
    CANCEL_QUEUED = "CANCEL_QUEUED"
    CANCEL_DROPPED = "CANCEL_DROPPED"

    SAFETY_CONFIRMATION_CORRECTED = "SAFETY_CONFIRMATION_CORRECTED"

    PAYMENT_AUTHORIZATION_FAILED = "PAYMENT_AUTHORIZATION_FAILED"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"
    REFUND_ISSUED = "REFUND_ISSUED"

    DISPUTE_RAISED = "DISPUTE_RAISED"
    DISPUTE_UNDER_REVIEW = "DISPUTE_UNDER_REVIEW"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"

    DLQ_ARCHIVED = "DLQ_ARCHIVED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    actor_username: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None
) -> AuditLog:
    """
    Add an audit entry to the current transaction.

    Args:
        db: Database session (caller commits)
        action: Action being performed (use AuditAction constants)
        actor_id: ID of user performing the action (None for system)
        actor_username: Username of actor
        entity_type: Kind of record acted upon ("assignment", "dispute", ...)
        entity_id: ID of that record
        metadata: Additional context as JSON
        ip_address: IP address of the request

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        actor_username=actor_username,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        meta_data=metadata,
        ip_address=ip_address
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)

    if entity_id:
        query = query.where(AuditLog.entity_id == entity_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
