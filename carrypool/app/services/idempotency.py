"""
Redis-backed de-duplication of inbound gateway callbacks.
"""

import logging
from carrypool.app.core.config import settings

logger = logging.getLogger(__name__)

CALLBACK_KEY_PREFIX = "gateway:callback:"


async def claim_event(redis, event_id: str) -> bool:
    """
    Atomically claim a callback event id.

    Returns:
        True the first time an id is seen, False for a replay
    """
    claimed = await redis.set(
        f"{CALLBACK_KEY_PREFIX}{event_id}", "1",
        ex=settings.callback_dedup_ttl_seconds, nx=True
    )
    if not claimed:
        logger.info("Duplicate gateway callback %s ignored", event_id)
    return bool(claimed)


async def release_event(redis, event_id: str) -> None:
    """Forget a claim so the gateway's retry of a failed callback is processed."""
    await redis.delete(f"{CALLBACK_KEY_PREFIX}{event_id}")
