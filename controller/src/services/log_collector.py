"""
Collect logs and exit codes from Kubernetes pods.
"""

import logging
from typing import List, Optional
from kubernetes.client.rest import ApiException

from controller.src.k8s.client import get_core_api
from controller.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

def get_job_pod(job_name: str):
    """Get the pod for a job, or None if it has not been created yet."""
    core_v1 = get_core_api()

    try:
        pods = core_v1.list_namespaced_pod(
            namespace=settings.k8s_namespace,
            label_selector=f"job-name={job_name}",
        )
        if pods.items:
            return pods.items[0]
        return None
    except ApiException as e:
        logger.error(f"Failed to get pod for job {job_name}: {e}")
        return None

def collect_logs(job_name: str, tail_lines: int = None) -> List[str]:
    """Collect log lines from a job's pod."""
    core_v1 = get_core_api()

    pod = get_job_pod(job_name)
    if pod is None:
        return ["No pod found for job"]

    try:
        logs = core_v1.read_namespaced_pod_log(
            name=pod.metadata.name,
            namespace=settings.k8s_namespace,
            tail_lines=tail_lines or settings.log_tail_lines,
        )
        return logs.splitlines()
    except ApiException as e:
        if e.status == 400:
            # Container never started (image pull failure, deadline before start)
            return [f"Pod {pod.metadata.name} has no logs: {e.reason}"]
        logger.error(f"Failed to collect logs for {pod.metadata.name}: {e}")
        return [f"Error collecting logs: {e.reason}"]

def get_container_exit_code(job_name: str) -> Optional[int]:
    """Exit code of the step container, if it terminated."""
    pod = get_job_pod(job_name)
    if pod is None or pod.status is None:
        return None

    for status in pod.status.container_statuses or []:
        if status.name != "step":
            continue
        terminated = status.state.terminated if status.state else None
        if terminated is not None:
            return terminated.exit_code
    return None
