"""
Build executor - runs queued builds with the configured runtime.
"""

import logging
from datetime import datetime
from typing import Dict, Any, Optional

from controller.src.config import get_settings
from controller.src.models.step import BuildInfo, PipelineJob, PipelineReport
from controller.src.pipeline import (
    PipelineController,
    StepLogSink,
    ValidationError,
    LocalVolumeBackend,
    VolumeBackend,
    load_pipeline,
    render_report,
)
from controller.src.runtime import DockerRuntime, StepRuntime
from controller.src.services.status_reporter import (
    DatabaseStatusReporter,
    update_run_status,
)

logger = logging.getLogger(__name__)
settings = get_settings()

def build_runtime(name: Optional[str] = None) -> StepRuntime:
    """Create the step runtime selected by name or settings."""
    name = name or settings.runtime
    if name == "docker":
        return DockerRuntime()
    if name == "kubernetes":
        from controller.src.k8s.runtime import KubernetesJobRuntime
        return KubernetesJobRuntime()
    raise ValueError(f"Unknown runtime: {name}")

def build_volume_backend(
    runtime: StepRuntime,
    run_id: str,
    source_dir: Optional[str] = None,
) -> VolumeBackend:
    """Volume storage matching the runtime: PVCs on Kubernetes, host dirs otherwise."""
    if runtime.name == "kubernetes":
        from controller.src.k8s.runtime import KubernetesVolumeBackend
        return KubernetesVolumeBackend(run_id)
    presets = {"workspace": source_dir} if source_dir else None
    return LocalVolumeBackend(presets=presets)

async def execute_build(job_data: Dict[str, Any], runtime: Optional[StepRuntime] = None) -> Optional[PipelineReport]:
    """
    Execute a queued build run.
    Returns the final report, or None if the build file was rejected.
    """
    job = PipelineJob(**job_data)
    run_id = job.run_id

    try:
        dag = load_pipeline(job.config)
    except ValidationError as e:
        logger.error(f"Build {run_id} rejected: {e}")
        update_run_status(run_id, "failed", finished_at=datetime.utcnow())
        return None

    build = BuildInfo(**dict(job.build, build_id=run_id))
    if not build.project_id:
        build = build.model_copy(update={"project_id": settings.default_project_id})
    runtime = runtime or build_runtime()
    log_sink = StepLogSink(tail_lines=settings.log_tail_lines)

    if runtime.name == "kubernetes":
        from controller.src.k8s.client import ensure_namespace
        ensure_namespace()

    logger.info(f"Starting build {run_id} with {len(dag)} steps")
    try:
        controller = PipelineController(
            dag,
            runtime,
            build=build,
            substitutions=job.substitutions,
            volume_backend=build_volume_backend(runtime, run_id),
            observer=DatabaseStatusReporter(run_id, log_sink),
            log_sink=log_sink,
        )
    except ValidationError as e:
        logger.error(f"Build {run_id} rejected: {e}")
        update_run_status(run_id, "failed", finished_at=datetime.utcnow())
        return None

    report = await controller.run()
    logger.info(render_report(report))
    return report
