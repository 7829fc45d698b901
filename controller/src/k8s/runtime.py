"""
Run steps as Kubernetes Jobs and back named volumes with PVCs.
"""

import asyncio
import logging

from kubernetes.client.rest import ApiException

from controller.src.config import get_settings
from controller.src.k8s.client import (
    create_job,
    read_job,
    delete_job,
    create_volume_claim,
    delete_volume_claim,
)
from controller.src.k8s.job_builder import (
    build_job,
    build_volume_claim,
    get_job_status,
)
from controller.src.pipeline.errors import ResourceError
from controller.src.pipeline.volumes import VolumeBackend
from controller.src.runtime.base import StepRuntime, UnitSpec, OutputCallback
from controller.src.services.log_collector import collect_logs, get_container_exit_code

logger = logging.getLogger(__name__)
settings = get_settings()


class KubernetesJobRuntime(StepRuntime):
    name = "kubernetes"

    def __init__(self, poll_interval: float = None):
        self.poll_interval = poll_interval or settings.k8s_poll_interval

    async def run(self, unit: UnitSpec, on_output: OutputCallback) -> int:
        job = build_job(unit)
        job_name = job.metadata.name
        await asyncio.to_thread(create_job, job)

        try:
            status = await self._wait_for_job(job_name)
        except asyncio.CancelledError:
            logger.warning(f"Deleting job {job_name}")
            await asyncio.shield(asyncio.to_thread(delete_job, job_name))
            raise

        for line in await asyncio.to_thread(collect_logs, job_name):
            on_output(line)

        exit_code = await asyncio.to_thread(get_container_exit_code, job_name)
        if status == "succeeded":
            return 0
        # The Job failed without a terminated container (deadline, eviction).
        return exit_code if exit_code not in (None, 0) else 1

    async def _wait_for_job(self, job_name: str) -> str:
        while True:
            try:
                job = await asyncio.to_thread(read_job, job_name)
                status = get_job_status(job)
                if status in ("succeeded", "failed"):
                    return status
            except ApiException as e:
                logger.error(f"Error checking job status: {e}")
            await asyncio.sleep(self.poll_interval)


class KubernetesVolumeBackend(VolumeBackend):
    """One PersistentVolumeClaim per named volume per run."""

    def __init__(self, run_id: str):
        self.run_id = run_id

    def create(self, name: str) -> str:
        claim = build_volume_claim(self.run_id, name)
        try:
            create_volume_claim(claim)
        except ApiException as e:
            raise ResourceError(name, f"cannot create claim {claim.metadata.name}: {e.reason}")
        return claim.metadata.name

    def destroy(self, name: str, location: str) -> None:
        delete_volume_claim(location)
