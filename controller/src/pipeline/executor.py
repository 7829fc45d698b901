"""
Step executor - runs one step through a container runtime.
"""

import asyncio
import logging
import posixpath
from collections import deque
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence

from controller.src.models.step import (
    StepDescriptor,
    ExecutionResult,
    ExecutionStatus,
    MachineProfile,
)
from controller.src.pipeline.errors import ResourceError
from controller.src.pipeline.substitution import substitute
from controller.src.pipeline.volumes import MountHandle, VolumeManager
from controller.src.runtime.base import StepRuntime, UnitSpec

logger = logging.getLogger(__name__)
step_logger = logging.getLogger("controller.steps")


class StepLogSink:
    """Pipeline log sink: every output line goes to the ``controller.steps``
    logger, and the last ``tail_lines`` lines of each step are kept for the
    final report."""

    def __init__(self, tail_lines: int = 200):
        self.tail_lines = tail_lines
        self._tails: Dict[str, deque] = {}

    def write(self, step_id: str, line: str) -> None:
        self._tails.setdefault(step_id, deque(maxlen=self.tail_lines)).append(line)
        step_logger.info(f"[{step_id}] {line}")

    def tail(self, step_id: str) -> Optional[str]:
        lines = self._tails.get(step_id)
        if not lines:
            return None
        return "\n".join(lines)


class StepObserver:
    """Hooks called as steps move through their lifecycle."""

    def step_started(self, step: StepDescriptor, started_at: datetime) -> None:
        pass

    def step_finished(self, step: StepDescriptor, result: ExecutionResult) -> None:
        pass


async def notify(hook, *args) -> None:
    """Call an observer hook off the event loop; its errors are logged, not raised."""
    try:
        await asyncio.to_thread(hook, *args)
    except Exception:
        logger.exception(f"Observer hook {hook.__name__} failed")


class StepExecutor:
    def __init__(
        self,
        run_id: str,
        runtime: StepRuntime,
        volumes: VolumeManager,
        variables: Mapping[str, str],
        workspace_path: str,
        machine: MachineProfile = MachineProfile(),
        log_sink: Optional[StepLogSink] = None,
        observer: Optional[StepObserver] = None,
        mounts_for=None,
    ):
        self.run_id = run_id
        self.runtime = runtime
        self.volumes = volumes
        self.variables = variables
        self.workspace_path = workspace_path
        self.machine = machine
        self.log_sink = log_sink or StepLogSink()
        self.observer = observer or StepObserver()
        self.mounts_for = mounts_for or (lambda step: tuple(step.volumes))
        # Capacity of the execution environment, not a scheduling rule.
        self._capacity = asyncio.Semaphore(machine.cpus) if machine.cpus else None

    def resolve_env(self, step: StepDescriptor) -> Dict[str, str]:
        return {key: substitute(value, self.variables) for key, value in step.env.items()}

    async def dispatch(self, step: StepDescriptor, deadline: Optional[float] = None) -> ExecutionResult:
        """Resolve variables, acquire mounts and run the step."""
        env = self.resolve_env(step)
        mounts: List[MountHandle] = []
        try:
            for binding in self.mounts_for(step):
                mounts.append(await self.volumes.acquire(binding.name, binding.path))
        except ResourceError as e:
            logger.error(f"Step {step.id} cannot start: {e}")
            now = datetime.utcnow()
            return ExecutionResult(
                status=ExecutionStatus.FAILURE,
                error=str(e),
                started_at=now,
                finished_at=now,
            )
        return await self.run(step, env, mounts, deadline)

    async def run(
        self,
        step: StepDescriptor,
        env: Dict[str, str],
        mounts: Sequence[MountHandle],
        deadline: Optional[float] = None,
    ) -> ExecutionResult:
        """Run a step to completion, failure or timeout.

        Only the step's own timeout is enforced here. ``deadline`` (an event
        loop timestamp) is passed on to the unit as a hint; the scheduler
        enforces it by cancelling the calling task, which terminates the
        unit and propagates.
        """
        if self._capacity is not None:
            async with self._capacity:
                return await self._run(step, env, mounts, deadline)
        return await self._run(step, env, mounts, deadline)

    async def _run(self, step, env, mounts, deadline) -> ExecutionResult:
        loop = asyncio.get_running_loop()
        timeout = step.timeout
        unit_timeout = timeout
        if deadline is not None:
            remaining = max(deadline - loop.time(), 0.0)
            unit_timeout = remaining if timeout is None else min(timeout, remaining)

        unit = self.build_unit(step, env, mounts, unit_timeout)
        started_at = datetime.utcnow()
        await notify(self.observer.step_started, step, started_at)
        logger.info(f"Starting step {step.id} ({step.unit})")

        def on_output(line: str) -> None:
            self.log_sink.write(step.id, line)

        try:
            exit_code = await asyncio.wait_for(self.runtime.run(unit, on_output), timeout)
        except asyncio.TimeoutError:
            logger.error(f"Step {step.id} timed out after {timeout:.1f}s")
            return ExecutionResult(
                status=ExecutionStatus.TIMED_OUT,
                error=f"Step exceeded its deadline of {timeout:.1f}s",
                output=self.log_sink.tail(step.id),
                started_at=started_at,
                finished_at=datetime.utcnow(),
            )
        except asyncio.CancelledError:
            logger.warning(f"Step {step.id} cancelled")
            raise
        except Exception as e:
            logger.exception(f"Step {step.id} failed with exception")
            return ExecutionResult(
                status=ExecutionStatus.FAILURE,
                error=str(e) or e.__class__.__name__,
                output=self.log_sink.tail(step.id),
                started_at=started_at,
                finished_at=datetime.utcnow(),
            )

        finished_at = datetime.utcnow()
        if exit_code == 0:
            logger.info(f"Step {step.id} succeeded")
            return ExecutionResult(
                status=ExecutionStatus.SUCCESS,
                exit_code=0,
                started_at=started_at,
                finished_at=finished_at,
            )

        logger.error(f"Step {step.id} failed with exit code {exit_code}")
        return ExecutionResult(
            status=ExecutionStatus.FAILURE,
            exit_code=exit_code,
            output=self.log_sink.tail(step.id),
            started_at=started_at,
            finished_at=finished_at,
        )

    def build_unit(
        self,
        step: StepDescriptor,
        env: Dict[str, str],
        mounts: Sequence[MountHandle],
        timeout: Optional[float] = None,
    ) -> UnitSpec:
        workdir = self.workspace_path
        if step.dir:
            workdir = posixpath.normpath(posixpath.join(self.workspace_path, substitute(step.dir, self.variables)))
        entrypoint = substitute(step.entrypoint, self.variables) if step.entrypoint else None
        return UnitSpec(
            run_id=self.run_id,
            step_id=step.id,
            index=step.index,
            image=substitute(step.unit, self.variables),
            entrypoint=entrypoint,
            args=tuple(substitute(arg, self.variables) for arg in step.args),
            env=env,
            workdir=workdir,
            mounts=list(mounts),
            machine=self.machine,
            timeout=timeout,
        )
