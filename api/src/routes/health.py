from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
import redis.asyncio as redis
from redis.exceptions import RedisError

from api.src.db.database import get_db
from api.src.config import get_settings
from api.src.services.queue import get_queue_length

settings = get_settings()

router = APIRouter(tags=["health"])

async def _check_database(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        return f"unhealthy: {e}"
    return "healthy"

async def _check_redis() -> str:
    client = redis.from_url(settings.redis_url)
    try:
        await client.ping()
    except RedisError as e:
        return f"unhealthy: {e}"
    finally:
        await client.close()
    return "healthy"

@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """API, database, Redis and queue health in one response."""
    services = {
        "api": "healthy",
        "database": await _check_database(db),
        "redis": await _check_redis(),
    }
    queue_length = await get_queue_length() if services["redis"] == "healthy" else None
    overall = "healthy" if all(v == "healthy" for v in services.values()) else "degraded"

    return {"status": overall, "services": services, "queue_length": queue_length}
