"""
Payment Gateway Callback Endpoint.

Gateways retry callbacks until acknowledged, so every event id is
processed at most once (Redis SET NX) and replays are acknowledged.
"""

import logging
from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from carrypool.app.db.session import get_db
from carrypool.app.core.config import settings
from carrypool.app.core.exceptions import AuthenticationError
from carrypool.app.core.redis_client import get_redis
from carrypool.app.domain.escrow.escrow_service import EscrowService
from carrypool.app.schemas.payment import GatewayCallback, CallbackAck
from carrypool.app.services.idempotency import claim_event, release_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/callbacks", response_model=CallbackAck)
async def gateway_callback(
    callback: GatewayCallback,
    x_gateway_key: Optional[str] = Header(None),
    redis=Depends(get_redis),
    db: AsyncSession = Depends(get_db)
):
    """
    Receive an asynchronous gateway notification.
    """
    if settings.payment_gateway_api_key and x_gateway_key != settings.payment_gateway_api_key:
        raise AuthenticationError("Invalid gateway key")

    if not await claim_event(redis, callback.event_id):
        return CallbackAck(duplicate=True)

    try:
        payment = await EscrowService.reconcile_callback(
            db, callback.gateway_txn_id, callback.event, callback.status
        )
        await db.commit()
    except Exception:
        # Let the gateway's retry through
        await release_event(redis, callback.event_id)
        raise

    return CallbackAck(applied=payment is not None)
