"""
Report build run and step status to the database.
"""

import logging
from datetime import datetime
from typing import Optional
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from controller.src.config import get_settings
from controller.src.models.db import BuildRun, BuildStep
from controller.src.models.step import (
    StepDescriptor,
    ExecutionResult,
    PipelineReport,
)
from controller.src.pipeline.controller import PipelineObserver
from controller.src.pipeline.executor import StepLogSink

logger = logging.getLogger(__name__)
settings = get_settings()

_session_factory = None

def get_session_factory() -> sessionmaker:
    """Sync database sessions for the controller, created on first use."""
    global _session_factory
    if _session_factory is None:
        engine = create_engine(settings.database_url)
        _session_factory = sessionmaker(bind=engine)
    return _session_factory

def update_run_status(
    run_id: str,
    status: str,
    started_at: Optional[datetime] = None,
    finished_at: Optional[datetime] = None,
):
    """Update build run status in database."""
    with get_session_factory()() as session:
        values = {"status": status, "updated_at": datetime.utcnow()}

        if started_at:
            values["started_at"] = started_at
        if finished_at:
            values["finished_at"] = finished_at

        session.execute(
            update(BuildRun)
            .where(BuildRun.id == run_id)
            .values(**values)
        )
        session.commit()
        logger.info(f"Updated run {run_id} status to {status}")

def update_step_status(
    run_id: str,
    step_order: int,
    status: str,
    exit_code: Optional[int] = None,
    error: Optional[str] = None,
    logs: Optional[str] = None,
    started_at: Optional[datetime] = None,
    finished_at: Optional[datetime] = None,
):
    """Update build step status in database."""
    with get_session_factory()() as session:
        values = {"status": status, "updated_at": datetime.utcnow()}

        if exit_code is not None:
            values["exit_code"] = exit_code
        if error is not None:
            values["error"] = error
        if logs is not None:
            values["logs"] = logs
        if started_at:
            values["started_at"] = started_at
        if finished_at:
            values["finished_at"] = finished_at

        session.execute(
            update(BuildStep)
            .where(BuildStep.run_id == run_id)
            .where(BuildStep.step_order == step_order)
            .values(**values)
        )
        session.commit()
        logger.debug(f"Updated step {step_order} of run {run_id} to {status}")

class DatabaseStatusReporter(PipelineObserver):
    """Mirrors run and step transitions into the build_runs/build_steps tables."""

    def __init__(self, run_id: str, log_sink: Optional[StepLogSink] = None):
        self.run_id = run_id
        self.log_sink = log_sink

    def run_started(self, run_id, dag, started_at):
        update_run_status(self.run_id, "running", started_at=started_at)

    def step_started(self, step: StepDescriptor, started_at: datetime):
        update_step_status(self.run_id, step.index, "running", started_at=started_at)

    def step_finished(self, step: StepDescriptor, result: ExecutionResult):
        update_step_status(
            self.run_id,
            step.index,
            result.status.value,
            exit_code=result.exit_code,
            error=result.error or result.reason,
            logs=self.log_sink.tail(step.id) if self.log_sink else result.output,
            finished_at=result.finished_at,
        )

    def run_finished(self, report: PipelineReport):
        update_run_status(self.run_id, report.status.value, finished_at=report.finished_at)
