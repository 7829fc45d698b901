"""
Pipeline controller - top-level driver for one build run.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from controller.src.models.step import (
    StepDescriptor,
    ExecutionResult,
    ExecutionStatus,
    RunStatus,
    StepReport,
    PipelineReport,
    BuildInfo,
)
from controller.src.pipeline.descriptors import PipelineDAG
from controller.src.pipeline.executor import StepExecutor, StepLogSink, StepObserver, notify
from controller.src.pipeline.scheduler import DependencyScheduler
from controller.src.pipeline.substitution import resolve_variables
from controller.src.pipeline.volumes import VolumeBackend, VolumeManager, LocalVolumeBackend
from controller.src.runtime.base import StepRuntime

logger = logging.getLogger(__name__)


class PipelineObserver(StepObserver):
    """Receives run and step lifecycle events (status reporting, tests)."""

    def run_started(self, run_id: str, dag: PipelineDAG, started_at: datetime) -> None:
        pass

    def run_finished(self, report: PipelineReport) -> None:
        pass


class PipelineController:
    """Runs a validated DAG: pending -> running -> succeeded/failed/timed_out."""

    def __init__(
        self,
        dag: PipelineDAG,
        runtime: StepRuntime,
        build: Optional[BuildInfo] = None,
        substitutions: Optional[Mapping[str, str]] = None,
        volume_backend: Optional[VolumeBackend] = None,
        observer: Optional[PipelineObserver] = None,
        log_sink: Optional[StepLogSink] = None,
    ):
        self.dag = dag
        self.runtime = runtime
        self.build = build or BuildInfo(build_id=str(uuid.uuid4()))
        self.run_id = self.build.build_id
        # Resolved up front so a bad substitution fails before anything runs.
        self.variables = resolve_variables(self.build, dag.substitutions, substitutions)
        self.volume_backend = volume_backend or LocalVolumeBackend()
        self.observer = observer or PipelineObserver()
        self.log_sink = log_sink or StepLogSink()
        self.status = RunStatus.PENDING
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None

    async def run(self) -> PipelineReport:
        if self.status != RunStatus.PENDING:
            raise RuntimeError(f"Run {self.run_id} already {self.status.value}")

        loop = asyncio.get_running_loop()
        self.status = RunStatus.RUNNING
        self.started_at = datetime.utcnow()
        deadline = loop.time() + self.dag.timeout
        logger.info(
            f"Starting run {self.run_id} with {len(self.dag)} steps "
            f"(timeout {self.dag.timeout:.0f}s, machine {self.dag.machine.name})"
        )
        await notify(self.observer.run_started, self.run_id, self.dag, self.started_at)

        async with VolumeManager(self.volume_backend, self.dag.volume_references()) as volumes:
            executor = StepExecutor(
                run_id=self.run_id,
                runtime=self.runtime,
                volumes=volumes,
                variables=self.variables,
                workspace_path=self.dag.workspace_path,
                machine=self.dag.machine,
                log_sink=self.log_sink,
                observer=self.observer,
                mounts_for=self.dag.mounts_for,
            )

            async def on_finished(step: StepDescriptor, result: ExecutionResult) -> None:
                await notify(self.observer.step_finished, step, result)
                await volumes.step_finished(self.dag.mounts_for(step))

            scheduler = DependencyScheduler(self.dag, executor.dispatch, on_finished)
            outcome = await scheduler.run(deadline)

        self.finished_at = datetime.utcnow()
        self.status = final_status(outcome.results, outcome.timed_out)
        report = self._report(outcome.results)
        logger.info(f"Run {self.run_id} finished with status: {self.status.value}")
        await notify(self.observer.run_finished, report)
        return report

    def _report(self, results: Dict[str, ExecutionResult]) -> PipelineReport:
        return PipelineReport(
            run_id=self.run_id,
            status=self.status,
            timeout=self.dag.timeout,
            machine=self.dag.machine,
            started_at=self.started_at,
            finished_at=self.finished_at,
            steps=[
                StepReport(id=step.id, index=step.index, unit=step.unit, result=results[step.id])
                for step in self.dag
            ],
        )


def final_status(results: Dict[str, ExecutionResult], timed_out: bool) -> RunStatus:
    if timed_out:
        return RunStatus.TIMED_OUT
    if all(r.status == ExecutionStatus.SUCCESS for r in results.values()):
        return RunStatus.SUCCEEDED
    return RunStatus.FAILED


def run_pipeline(dag: PipelineDAG, runtime: StepRuntime, **kwargs) -> PipelineReport:
    """Synchronous wrapper around PipelineController.run."""
    controller = PipelineController(dag, runtime, **kwargs)
    return asyncio.run(controller.run())


def render_report(report: PipelineReport) -> str:
    """Human-readable summary of a finished run."""
    lines: List[str] = [f"Run {report.run_id}: {report.status.value.upper()}"]
    if report.started_at and report.finished_at:
        elapsed = (report.finished_at - report.started_at).total_seconds()
        lines[0] += f" in {elapsed:.1f}s"

    width = max(len(s.id) for s in report.steps) if report.steps else 0
    for step in report.steps:
        result = step.result
        detail = ""
        if result.status == ExecutionStatus.FAILURE:
            detail = f"exit code {result.exit_code}" if result.exit_code is not None else (result.error or "")
        elif result.status == ExecutionStatus.SKIPPED:
            detail = result.reason or ""
        elif result.status == ExecutionStatus.TIMED_OUT:
            detail = result.error or ""
        lines.append(f"  {step.id.ljust(width)}  {result.status.value:<9}  {detail}".rstrip())

    for step in report.failed_steps:
        if step.result.output:
            lines.append(f"--- output of {step.id} ---")
            lines.append(step.result.output)
    return "\n".join(lines)
