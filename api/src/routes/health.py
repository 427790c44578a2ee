from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
import redis.asyncio as redis

from api.src.db.database import get_db
from api.src.config import get_settings
from api.src.services.queue import get_queue_length

settings = get_settings()

router = APIRouter(tags=["health"])

async def check_database(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
        return "healthy"
    except Exception as e:
        return f"unhealthy: {e}"

async def check_redis() -> str:
    client = redis.from_url(settings.redis_url)
    try:
        await client.ping()
        return "healthy"
    except Exception as e:
        return f"unhealthy: {e}"
    finally:
        await client.aclose()

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "conduit-api"}

@router.get("/health/db")
async def db_health_check(db: AsyncSession = Depends(get_db)):
    status = await check_database(db)
    return {"status": status.split(":")[0], "database": status}

@router.get("/health/redis")
async def redis_health_check():
    status = await check_redis()
    return {"status": status.split(":")[0], "redis": status}

@router.get("/health/all")
async def full_health_check(db: AsyncSession = Depends(get_db)):
    """Combined health check for the database, Redis and the event queue."""
    health = {
        "api": "healthy",
        "database": await check_database(db),
        "redis": await check_redis(),
    }

    queue_length = None
    if health["redis"] == "healthy":
        queue_length = await get_queue_length()

    overall = "healthy" if all(v == "healthy" for v in health.values()) else "degraded"
    return {"status": overall, "services": health, "queue_length": queue_length}
