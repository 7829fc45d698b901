"""
Redis queue service for build jobs.
"""

import redis.asyncio as redis
import json
from typing import Dict, Any, Optional
from datetime import datetime

from api.src.config import get_settings

settings = get_settings()

BUILD_QUEUE = "buildgraph:jobs"
BUILD_STATUS = "buildgraph:status"

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)

def build_job_payload(
    run_id: str,
    config: Dict[str, Any],
    substitutions: Optional[Dict[str, str]] = None,
    build: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Job document consumed by the controller worker."""
    return {
        "run_id": run_id,
        "config": config,
        "substitutions": dict(substitutions or {}),
        "build": {k: v for k, v in (build or {}).items() if v is not None},
        "queued_at": datetime.utcnow().isoformat(),
    }

async def enqueue_build_run(
    run_id: str,
    config: Dict[str, Any],
    substitutions: Optional[Dict[str, str]] = None,
    build: Optional[Dict[str, str]] = None,
):
    """Add build run to processing queue."""
    client = await get_redis_client()
    job = build_job_payload(run_id, config, substitutions, build)

    try:
        await client.lpush(BUILD_QUEUE, json.dumps(job))
        await client.hset(BUILD_STATUS, run_id, "queued")
    finally:
        await client.close()

async def get_run_status(run_id: str) -> Optional[str]:
    """Get live build run status from Redis."""
    client = await get_redis_client()

    try:
        return await client.hget(BUILD_STATUS, run_id)
    finally:
        await client.close()

async def get_queue_length() -> int:
    """Get number of jobs in queue."""
    client = await get_redis_client()

    try:
        return await client.llen(BUILD_QUEUE)
    finally:
        await client.close()
