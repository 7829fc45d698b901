"""
Dependency scheduler - runs a PipelineDAG with maximum concurrency.

Every step whose predecessors have all succeeded is started at once. A step
whose predecessor ends in any other state is skipped without running, and
so are its own dependents; unrelated branches carry on. All bookkeeping
happens in the single ``run`` coroutine, steps run as separate tasks.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Set

from pydantic import BaseModel

from controller.src.models.step import StepDescriptor, ExecutionResult, ExecutionStatus
from controller.src.pipeline.descriptors import PipelineDAG

logger = logging.getLogger(__name__)

Dispatch = Callable[[StepDescriptor, float], Awaitable[ExecutionResult]]
FinishedCallback = Callable[[StepDescriptor, ExecutionResult], Awaitable[None]]


class ScheduleOutcome(BaseModel):
    results: Dict[str, ExecutionResult]
    timed_out: bool = False


class DependencyScheduler:
    def __init__(
        self,
        dag: PipelineDAG,
        dispatch: Dispatch,
        on_finished: Optional[FinishedCallback] = None,
    ):
        self.dag = dag
        self.dispatch = dispatch
        self.on_finished = on_finished
        self.results: Dict[str, ExecutionResult] = {}
        self._waiting: Dict[str, Set[str]] = {s.id: set(s.wait_for) for s in dag}

    def ready(self, running: Set[str]):
        """Steps with every predecessor succeeded, in declaration order."""
        return [
            step for step in self.dag
            if step.id not in self.results
            and step.id not in running
            and not self._waiting[step.id]
        ]

    async def _record(self, step_id: str, result: ExecutionResult) -> None:
        """Store a terminal result and update dependents."""
        if step_id in self.results:
            return
        self.results[step_id] = result
        step = self.dag[step_id]
        logger.info(f"Step {step_id} -> {result.status.value}")
        if self.on_finished is not None:
            await self.on_finished(step, result)

        for child in self.dag.dependents(step_id):
            if child in self.results:
                continue
            if result.status == ExecutionStatus.SUCCESS:
                self._waiting[child].discard(step_id)
            else:
                await self._record(
                    child,
                    ExecutionResult.skipped(f"dependency '{step_id}' ended {result.status.value}"),
                )

    async def run(self, deadline: float) -> ScheduleOutcome:
        """Drive the DAG until every step has a terminal result.

        ``deadline`` is an event loop timestamp; when it passes, running
        steps are cancelled and recorded as timed out and steps that never
        started are skipped.
        """
        loop = asyncio.get_running_loop()
        running: Dict[asyncio.Task, str] = {}
        timed_out = False

        try:
            while len(self.results) < len(self.dag):
                if loop.time() >= deadline:
                    timed_out = True
                    break

                for step in self.ready(set(running.values())):
                    logger.debug(f"Dispatching step {step.id}")
                    task = asyncio.create_task(self.dispatch(step, deadline), name=f"step:{step.id}")
                    running[task] = step.id

                if not running:
                    # Cannot happen on a validated DAG.
                    raise RuntimeError("No runnable steps left but the DAG is unresolved")

                done, _ = await asyncio.wait(
                    list(running),
                    timeout=max(deadline - loop.time(), 0.0),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    step_id = running.pop(task)
                    await self._record(step_id, self._task_result(step_id, task))
        finally:
            if running:
                await self._cancel(running)

        if timed_out:
            for step in self.dag:
                if step.id not in self.results:
                    await self._record(step.id, ExecutionResult.skipped("pipeline deadline exceeded"))

        return ScheduleOutcome(results=dict(self.results), timed_out=timed_out)

    async def _cancel(self, running: Dict[asyncio.Task, str]) -> None:
        """Cancel running steps and record them as timed out."""
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        for task, step_id in running.items():
            await self._record(step_id, self._task_result(step_id, task))
        running.clear()

    def _task_result(self, step_id: str, task: asyncio.Task) -> ExecutionResult:
        if task.cancelled():
            logger.error(f"Step {step_id} terminated at pipeline deadline")
            return ExecutionResult(
                status=ExecutionStatus.TIMED_OUT,
                error="Pipeline deadline exceeded",
                finished_at=datetime.utcnow(),
            )
        exc = task.exception()
        if exc is not None:
            logger.error(f"Step {step_id} crashed: {exc!r}")
            return ExecutionResult(
                status=ExecutionStatus.FAILURE,
                error=str(exc) or exc.__class__.__name__,
                finished_at=datetime.utcnow(),
            )
        return task.result()
