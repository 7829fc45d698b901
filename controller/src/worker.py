"""
Queue worker - pulls build runs from Redis and executes them.
"""

import asyncio
import logging
import redis
import json
from datetime import datetime
from typing import Optional, Dict, Any

from controller.src.config import get_settings
from controller.src.services.executor import execute_build
from controller.src.services.status_reporter import update_run_status

logger = logging.getLogger(__name__)
settings = get_settings()

BUILD_QUEUE = "buildgraph:jobs"
BUILD_STATUS = "buildgraph:status"

def get_next_job(client: redis.Redis, timeout: int = 5) -> Optional[Dict[str, Any]]:
    """Pull next job from Redis queue, blocking up to ``timeout`` seconds."""
    result = client.brpop(BUILD_QUEUE, timeout=timeout)
    if result:
        _, job_data = result
        return json.loads(job_data)
    return None

async def handle_job(client: redis.Redis, job: Dict[str, Any]):
    run_id = job.get("run_id", "unknown")
    logger.info(f"Received job for run {run_id}")
    client.hset(BUILD_STATUS, run_id, "running")

    try:
        report = await execute_build(job)
        status = report.status.value if report else "failed"
    except Exception as e:
        logger.exception(f"Failed to execute build {run_id}: {e}")
        update_run_status(run_id, "failed", finished_at=datetime.utcnow())
        status = "failed"

    client.hset(BUILD_STATUS, run_id, status)

async def worker_loop():
    """Main worker loop."""
    logger.info("Worker started, waiting for jobs...")
    client = redis.from_url(settings.redis_url, decode_responses=True)

    try:
        while True:
            try:
                job = await asyncio.to_thread(get_next_job, client)
                if job:
                    await handle_job(client, job)
            except redis.RedisError as e:
                logger.exception(f"Worker error: {e}")
                await asyncio.sleep(5)
    finally:
        client.close()

def run_worker():
    """Entry point for worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
