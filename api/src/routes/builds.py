from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from typing import Any, Dict, List, Optional
from uuid import UUID
import logging

from api.src.config import get_settings
from api.src.db.database import get_db
from api.src.models.pipeline import BuildRun, BuildStep, Repository
from api.src.models.run import BuildRequest, BuildRunResponse
from api.src.services.pipeline_parser import (
    PipelineConfigError,
    parse_pipeline_config,
    check_substitutions,
    describe_steps,
)
from api.src.services.queue import enqueue_build_run, get_run_status

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/builds", tags=["builds"])

async def create_build_run(
    db: AsyncSession,
    config: Dict[str, Any],
    dag,
    build: Dict[str, str],
    substitutions: Optional[Dict[str, str]] = None,
    triggered_by: Optional[str] = None,
    repository_id=None,
) -> Dict[str, Any]:
    """Persist a validated build with its steps and put it on the queue."""
    build_run = BuildRun(
        repository_id=repository_id,
        commit_sha=build.get("commit_sha") or None,
        branch=build.get("branch_name") or None,
        status="queued",
        triggered_by=triggered_by,
        config=config,
        substitutions=substitutions or {},
        timeout_seconds=dag.timeout,
        machine_type=dag.machine.name,
    )
    db.add(build_run)
    await db.flush()

    for row in describe_steps(dag):
        db.add(BuildStep(run_id=build_run.id, status="pending", **row))

    await db.commit()

    await enqueue_build_run(
        run_id=str(build_run.id),
        config=config,
        substitutions=substitutions,
        build=build,
    )

    logger.info(f"Build run {build_run.id} created and queued")

    return {
        "status": "queued",
        "run_id": str(build_run.id),
        "steps": len(dag),
    }

@router.post("")
async def submit_build(request: BuildRequest, db: AsyncSession = Depends(get_db)):
    """Validate a build file and queue a run for it."""
    try:
        config, dag = parse_pipeline_config(request.config)
        check_substitutions(dag, request.substitutions)
    except PipelineConfigError as e:
        logger.warning(f"Rejected build file: {e}")
        return JSONResponse(status_code=422, content=e.to_dict())

    build = {
        "project_id": request.project_id or settings.default_project_id,
        "branch_name": request.branch,
        "tag_name": request.tag,
        "commit_sha": request.commit_sha,
        "repo_name": request.repo_name,
    }
    return await create_build_run(
        db,
        config,
        dag,
        build,
        substitutions=request.substitutions,
        triggered_by=request.triggered_by,
    )

async def _load_run(run_id: UUID, db: AsyncSession) -> BuildRun:
    query = (
        select(BuildRun)
        .options(selectinload(BuildRun.steps))
        .where(BuildRun.id == run_id)
    )
    result = await db.execute(query)
    run = result.scalar_one_or_none()

    if not run:
        raise HTTPException(status_code=404, detail="Build run not found")
    return run

@router.get("/runs", response_model=List[BuildRunResponse])
async def list_runs(
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """List build runs, newest first."""
    query = (
        select(BuildRun)
        .options(selectinload(BuildRun.steps))
        .order_by(BuildRun.created_at.desc())
    )

    if status:
        query = query.where(BuildRun.status == status)

    query = query.limit(limit).offset(offset)

    result = await db.execute(query)
    return result.scalars().all()

@router.get("/runs/{run_id}", response_model=BuildRunResponse)
async def get_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    return await _load_run(run_id, db)

@router.get("/runs/{run_id}/status")
async def get_run_status_endpoint(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Database status of a run and its steps, plus the worker's live status."""
    run = await _load_run(run_id, db)
    live_status = await get_run_status(str(run_id))

    return {
        "run_id": str(run_id),
        "db_status": run.status,
        "live_status": live_status,
        "steps": [
            {
                "id": step.step_id,
                "status": step.status,
                "exit_code": step.exit_code,
                "order": step.step_order,
            }
            for step in sorted(run.steps, key=lambda s: s.step_order)
        ]
    }

@router.get("/runs/{run_id}/logs")
async def get_run_logs(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Captured log tail of every step in a run."""
    query = (
        select(BuildStep)
        .where(BuildStep.run_id == run_id)
        .order_by(BuildStep.step_order)
    )
    result = await db.execute(query)
    steps = result.scalars().all()

    if not steps:
        raise HTTPException(status_code=404, detail="Build run not found")

    return {
        "run_id": str(run_id),
        "steps": [
            {
                "id": step.step_id,
                "status": step.status,
                "error": step.error,
                "logs": step.logs,
                "started_at": step.started_at,
                "finished_at": step.finished_at,
            }
            for step in steps
        ]
    }

@router.get("/stats")
async def get_build_stats(db: AsyncSession = Depends(get_db)):
    """Run counts by status."""
    status_query = (
        select(BuildRun.status, func.count(BuildRun.id))
        .group_by(BuildRun.status)
    )
    result = await db.execute(status_query)
    status_counts = {row[0]: row[1] for row in result.all()}

    result = await db.execute(select(func.count(Repository.id)))
    repo_count = result.scalar()

    return {
        "repositories": repo_count,
        "runs": status_counts,
        "total_runs": sum(status_counts.values()),
    }
