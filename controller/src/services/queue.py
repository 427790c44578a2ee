"""
Redis queue service for build events, cancellation requests and live status.
"""

import redis.asyncio as redis
import json
import logging
from typing import List, Optional

from controller.src.config import get_settings
from controller.src.models.event import Event

logger = logging.getLogger(__name__)
settings = get_settings()

EVENT_QUEUE = "conduit:events"
RUN_STATUS = "conduit:status"
CANCEL_REQUESTS = "conduit:cancel"
BUILD_NUMBER = "conduit:build_number"

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)

async def dequeue_event(timeout: int = 1) -> Optional[Event]:
    """
    Get next build event from the queue.
    Blocks for `timeout` seconds if the queue is empty.
    """
    client = await get_redis_client()

    try:
        result = await client.brpop(EVENT_QUEUE, timeout=timeout)
        if result:
            _, job_data = result
            return Event.model_validate(json.loads(job_data))
        return None
    finally:
        await client.aclose()

async def enqueue_event(event: Event):
    """Add a build event to the queue."""
    client = await get_redis_client()

    try:
        await client.lpush(EVENT_QUEUE, event.model_dump_json())
        await client.hset(RUN_STATUS, event.id, "pending")
    finally:
        await client.aclose()

async def next_build_number() -> int:
    client = await get_redis_client()

    try:
        return await client.incr(BUILD_NUMBER)
    finally:
        await client.aclose()

async def pop_cancel_requests() -> List[str]:
    """Take all pending cancellation requests (event ids)."""
    client = await get_redis_client()

    try:
        event_ids = await client.smembers(CANCEL_REQUESTS)
        if event_ids:
            await client.srem(CANCEL_REQUESTS, *event_ids)
        return sorted(event_ids)
    finally:
        await client.aclose()

async def update_run_status(key: str, status: str):
    """Update run (or build) status in Redis."""
    client = await get_redis_client()

    try:
        await client.hset(RUN_STATUS, key, status)
    finally:
        await client.aclose()
