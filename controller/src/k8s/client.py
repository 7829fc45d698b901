"""
Kubernetes API access for step jobs and volume claims.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
import logging

from controller.src.config import get_settings
from controller.src.pipeline.errors import RuntimeUnavailableError

logger = logging.getLogger(__name__)
settings = get_settings()

_batch_v1 = None
_core_v1 = None

def load_cluster_config():
    """Load in-cluster or kubeconfig credentials, per settings."""
    if settings.k8s_in_cluster:
        config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes credentials")
    else:
        config.load_kube_config()
        logger.info("Using local kubeconfig")

def init_k8s_client() -> bool:
    """Create the API clients and check the cluster answers."""
    global _batch_v1, _core_v1

    try:
        load_cluster_config()
        api_client = client.ApiClient()
        core_v1 = client.CoreV1Api(api_client)
        core_v1.get_api_resources()
    except Exception as e:
        logger.error(f"Kubernetes API unavailable: {e}")
        return False

    _core_v1 = core_v1
    _batch_v1 = client.BatchV1Api(api_client)
    logger.info("Kubernetes client ready")
    return True

def get_batch_api() -> client.BatchV1Api:
    """BatchV1 API for step jobs."""
    if _batch_v1 is None and not init_k8s_client():
        raise RuntimeUnavailableError("Kubernetes API is not reachable")
    return _batch_v1

def get_core_api() -> client.CoreV1Api:
    """CoreV1 API for pods, logs and volume claims."""
    if _core_v1 is None and not init_k8s_client():
        raise RuntimeUnavailableError("Kubernetes API is not reachable")
    return _core_v1

def ensure_namespace():
    """Create the build namespace unless it already exists."""
    namespace = client.V1Namespace(
        metadata=client.V1ObjectMeta(
            name=settings.k8s_namespace,
            labels={"app": "buildgraph"},
        )
    )
    try:
        get_core_api().create_namespace(body=namespace)
        logger.info(f"Created namespace '{settings.k8s_namespace}'")
    except ApiException as e:
        if e.status != 409:
            raise
        logger.debug(f"Namespace '{settings.k8s_namespace}' already exists")

def create_job(job: client.V1Job):
    """Create a step job, replacing a leftover job with the same name."""
    batch_v1 = get_batch_api()
    job_name = job.metadata.name

    try:
        batch_v1.create_namespaced_job(namespace=settings.k8s_namespace, body=job)
    except ApiException as e:
        if e.status != 409:
            raise
        logger.warning(f"Job {job_name} already exists, replacing it")
        delete_job(job_name)
        batch_v1.create_namespaced_job(namespace=settings.k8s_namespace, body=job)
    logger.info(f"Created job {job_name}")

def read_job(job_name: str) -> client.V1Job:
    return get_batch_api().read_namespaced_job(
        name=job_name,
        namespace=settings.k8s_namespace,
    )

def delete_job(job_name: str, namespace: str = None):
    """Delete a job and its pods."""
    namespace = namespace or settings.k8s_namespace
    batch_v1 = get_batch_api()

    try:
        batch_v1.delete_namespaced_job(
            name=job_name,
            namespace=namespace,
            body=client.V1DeleteOptions(
                propagation_policy="Foreground"
            )
        )
        logger.info(f"Deleted job {job_name}")
    except ApiException as e:
        if e.status != 404:
            logger.error(f"Failed to delete job {job_name}: {e}")

def create_volume_claim(claim: client.V1PersistentVolumeClaim):
    """Create a PVC; an existing claim with the same name is reused."""
    core_v1 = get_core_api()

    try:
        core_v1.create_namespaced_persistent_volume_claim(
            namespace=settings.k8s_namespace,
            body=claim,
        )
        logger.info(f"Created volume claim {claim.metadata.name}")
    except ApiException as e:
        if e.status != 409:
            raise
        logger.info(f"Volume claim {claim.metadata.name} already exists")

def delete_volume_claim(claim_name: str):
    core_v1 = get_core_api()

    try:
        core_v1.delete_namespaced_persistent_volume_claim(
            name=claim_name,
            namespace=settings.k8s_namespace,
        )
        logger.info(f"Deleted volume claim {claim_name}")
    except ApiException as e:
        if e.status != 404:
            logger.error(f"Failed to delete volume claim {claim_name}: {e}")
