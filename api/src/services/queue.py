"""
Redis queue service for build events.
"""

import redis.asyncio as redis
from typing import Optional

from api.src.config import get_settings
from api.src.models.run import BuildEvent

settings = get_settings()

EVENT_QUEUE = "conduit:events"
RUN_STATUS = "conduit:status"
CANCEL_REQUESTS = "conduit:cancel"
BUILD_NUMBER = "conduit:build_number"

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)

async def enqueue_event(event: BuildEvent):
    """Add a build event to the controller's queue."""
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

async def request_cancel(event_id: str):
    """Ask the controller to cancel a build."""
    client = await get_redis_client()

    try:
        await client.sadd(CANCEL_REQUESTS, event_id)
    finally:
        await client.aclose()

async def get_run_status(key: str) -> Optional[str]:
    """Get live build or run status from Redis."""
    client = await get_redis_client()

    try:
        return await client.hget(RUN_STATUS, key)
    finally:
        await client.aclose()

async def get_queue_length() -> int:
    """Get number of events waiting in the queue."""
    client = await get_redis_client()

    try:
        return await client.llen(EVENT_QUEUE)
    finally:
        await client.aclose()
