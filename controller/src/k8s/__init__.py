from controller.src.k8s.client import (
    init_k8s_client,
    get_batch_api,
    get_core_api,
    ensure_namespace,
    create_job,
    read_job,
    delete_job,
    create_volume_claim,
    delete_volume_claim,
)
from controller.src.k8s.job_builder import (
    build_job,
    build_job_name,
    build_claim_name,
    build_volume_claim,
    get_job_status,
)

__all__ = [
    "init_k8s_client",
    "get_batch_api",
    "get_core_api",
    "ensure_namespace",
    "create_job",
    "read_job",
    "delete_job",
    "create_volume_claim",
    "delete_volume_claim",
    "build_job",
    "build_job_name",
    "build_claim_name",
    "build_volume_claim",
    "get_job_status",
]
