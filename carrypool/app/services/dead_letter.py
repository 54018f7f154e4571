"""
Dead Letter Queue helpers.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from carrypool.app.models.dlq import DeadLetterQueue

logger = logging.getLogger(__name__)


async def record_dead_letter(
    db: AsyncSession,
    task_name: str,
    error: Any,
    payload: Optional[Dict[str, Any]] = None
) -> DeadLetterQueue:
    """Park a failed gateway call for admin follow-up. Caller commits."""
    item = DeadLetterQueue(task_name=task_name, error_message=str(error), payload=payload)
    db.add(item)
    await db.flush()
    logger.error("DLQ: %s failed: %s", task_name, error, extra={"dlq_id": item.id, "payload": payload})
    return item
