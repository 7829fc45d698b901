"""
GitHub webhook endpoints.
"""

from fastapi import APIRouter, Request, HTTPException, Header, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Optional
import httpx
import logging

from api.src.config import get_settings
from api.src.db.database import get_db
from api.src.models.pipeline import Repository
from api.src.routes.builds import create_build_run
from api.src.services.github import (
    verify_signature,
    parse_webhook_payload,
    fetch_build_config,
)
from api.src.services.pipeline_parser import parse_pipeline_config, PipelineConfigError

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

async def process_push_event(payload: dict, db: AsyncSession):
    """Turn a GitHub push into a queued build run."""
    webhook_data = parse_webhook_payload(payload)

    if webhook_data["deleted"] or not webhook_data["commit_sha"]:
        logger.warning("No commit SHA in webhook payload")
        return {"status": "skipped", "reason": "No commit SHA"}

    try:
        found = await fetch_build_config(webhook_data["repo_full_name"], webhook_data["commit_sha"])
    except httpx.HTTPError as e:
        logger.error(f"Failed to fetch build file: {e}")
        return {"status": "error", "reason": str(e)}

    if not found:
        logger.info(f"No build file found in {webhook_data['repo_full_name']}")
        return {"status": "skipped", "reason": "No build configuration found"}

    path, text = found
    try:
        config, dag = parse_pipeline_config(text)
    except PipelineConfigError as e:
        logger.error(f"Invalid build file {path}: {e}")
        return {"status": "error", "reason": str(e), "error": e.to_dict()}

    # Get or create repository
    result = await db.execute(
        select(Repository).where(Repository.full_name == webhook_data["repo_full_name"])
    )
    repository = result.scalar_one_or_none()

    if not repository:
        repository = Repository(
            name=webhook_data["repo_name"],
            full_name=webhook_data["repo_full_name"],
            clone_url=webhook_data["clone_url"],
        )
        db.add(repository)
        await db.flush()

    build = {
        "project_id": settings.default_project_id,
        "branch_name": webhook_data["branch"],
        "tag_name": webhook_data["tag"],
        "commit_sha": webhook_data["commit_sha"],
        "repo_name": webhook_data["repo_name"],
    }
    return await create_build_run(
        db,
        config,
        dag,
        build,
        triggered_by=webhook_data["pusher"],
        repository_id=repository.id,
    )

@router.post("/github")
async def github_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    Receive GitHub webhook events.
    """
    body = await request.body()

    if not verify_signature(body, x_hub_signature_256):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if x_github_event == "ping":
        return {"status": "pong", "message": "Webhook configured successfully"}

    if x_github_event == "push":
        return await process_push_event(payload, db)

    return {
        "status": "ignored",
        "event": x_github_event,
        "message": f"Event type '{x_github_event}' not handled"
    }
