import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as aioredis

from buddymatch.config import REDIS_URL, IDEMPOTENCY_TTL_SECONDS

logger = logging.getLogger(__name__)

redis = aioredis.from_url(REDIS_URL, decode_responses=True)


def _key(user_id: str, operation: str, idempotency_key: str) -> str:
    return f"idem:{user_id}:{operation}:{idempotency_key}"


async def get_cached_result(user_id: str, operation: str, idempotency_key: Optional[str], client=None) -> Optional[Dict[str, Any]]:
    """Return the stored response of an already completed request, if any."""
    if not idempotency_key:
        return None
    client = client or redis
    try:
        raw = await client.get(_key(user_id, operation, idempotency_key))
    except Exception:
        logger.exception(f"[get_cached_result] Redis lookup failed for {operation} by {user_id}")
        return None
    if raw is None:
        return None
    logger.info(f"[get_cached_result] Replaying {operation} for {user_id}, key={idempotency_key}")
    return json.loads(raw)


async def cache_result(
    user_id: str,
    operation: str,
    idempotency_key: Optional[str],
    result: Dict[str, Any],
    client=None,
    ttl: int = IDEMPOTENCY_TTL_SECONDS,
) -> None:
    if not idempotency_key:
        return
    client = client or redis
    try:
        await client.setex(_key(user_id, operation, idempotency_key), ttl, json.dumps(result))
    except Exception:
        logger.exception(f"[cache_result] Redis write failed for {operation} by {user_id}")
