"""
Kubernetes Job and PVC builders for build steps.
"""

from kubernetes import client
from typing import Dict, List, Optional
import hashlib
import math

from controller.src.config import get_settings
from controller.src.runtime.base import UnitSpec

settings = get_settings()

def _run_hash(run_id: str) -> str:
    return hashlib.md5(run_id.encode()).hexdigest()[:8]

def _safe_name(name: str, limit: int = 20) -> str:
    safe = name.lower().replace(" ", "-").replace("_", "-").replace(".", "-")
    safe = "".join(c for c in safe if c.isalnum() or c == "-")
    return safe[:limit].strip("-") or "step"

def build_job_name(run_id: str, index: int, step_id: str) -> str:
    """Generate a unique job name."""
    # K8s names must be lowercase, alphanumeric, max 63 chars
    return f"bg-{_run_hash(run_id)}-{index}-{_safe_name(step_id)}"

def build_claim_name(run_id: str, volume_name: str) -> str:
    """Generate the PVC name backing a named volume for one run."""
    return f"bg-{_run_hash(run_id)}-vol-{_safe_name(volume_name, 40)}"

def _labels(run_id: str) -> Dict[str, str]:
    return {"app": "buildgraph", "run-hash": _run_hash(run_id)}

def build_resources(unit: UnitSpec) -> client.V1ResourceRequirements:
    """Resource requests/limits from the run's machine profile."""
    machine = unit.machine
    if not machine.cpus:
        return client.V1ResourceRequirements(
            requests={"cpu": "100m", "memory": "128Mi"},
            limits={"cpu": "500m", "memory": "512Mi"},
        )
    memory = f"{int(math.ceil((machine.memory_gb or 1) * 1024))}Mi"
    return client.V1ResourceRequirements(
        requests={"cpu": "500m", "memory": "256Mi"},
        limits={"cpu": str(machine.cpus), "memory": memory},
    )

def build_job(unit: UnitSpec) -> client.V1Job:
    """
    Build a Kubernetes Job for a build step.
    Each mount handle's location is the name of the PVC to mount.
    """
    job_name = build_job_name(unit.run_id, unit.index, unit.step_id)
    labels = dict(_labels(unit.run_id), **{"step-index": str(unit.index)})

    env = [client.V1EnvVar(name=key, value=unit.env[key]) for key in sorted(unit.env)]

    volumes: List[client.V1Volume] = []
    mounts: List[client.V1VolumeMount] = []
    for i, handle in enumerate(unit.mounts):
        volume_name = f"vol-{i}"
        volumes.append(client.V1Volume(
            name=volume_name,
            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                claim_name=handle.location,
            ),
        ))
        mounts.append(client.V1VolumeMount(name=volume_name, mount_path=handle.path))

    container = client.V1Container(
        name="step",
        image=unit.image,
        command=[unit.entrypoint] if unit.entrypoint else None,
        args=list(unit.args) or None,
        env=env,
        working_dir=unit.workdir,
        volume_mounts=mounts,
        resources=build_resources(unit),
    )

    pod_spec = client.V1PodSpec(
        containers=[container],
        volumes=volumes,
        restart_policy="Never",
    )

    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=labels),
        spec=pod_spec,
    )

    active_deadline: Optional[int] = None
    if unit.timeout is not None:
        active_deadline = max(int(math.ceil(unit.timeout)), 1)

    job_spec = client.V1JobSpec(
        template=template,
        backoff_limit=0,  # Don't retry failed steps
        active_deadline_seconds=active_deadline,
        ttl_seconds_after_finished=settings.job_ttl_after_finished,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=settings.k8s_namespace,
            labels=labels,
        ),
        spec=job_spec,
    )

def build_volume_claim(run_id: str, volume_name: str) -> client.V1PersistentVolumeClaim:
    """Build the PVC backing one named volume."""
    return client.V1PersistentVolumeClaim(
        api_version="v1",
        kind="PersistentVolumeClaim",
        metadata=client.V1ObjectMeta(
            name=build_claim_name(run_id, volume_name),
            namespace=settings.k8s_namespace,
            labels=dict(_labels(run_id), volume=_safe_name(volume_name, 40)),
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=[settings.k8s_volume_access_mode],
            storage_class_name=settings.k8s_storage_class,
            resources=client.V1VolumeResourceRequirements(
                requests={"storage": settings.k8s_volume_size},
            ),
        ),
    )

def get_job_status(job: client.V1Job) -> str:
    """
    Determine job status from Kubernetes Job object.
    Returns: 'pending', 'running', 'succeeded', 'failed'
    """
    if job.status is None:
        return "pending"

    if job.status.succeeded and job.status.succeeded > 0:
        return "succeeded"

    if job.status.failed and job.status.failed > 0:
        return "failed"

    if job.status.active and job.status.active > 0:
        return "running"

    return "pending"
