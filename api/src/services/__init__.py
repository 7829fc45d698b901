from api.src.services.github import (
    verify_signature,
    parse_webhook_payload,
    fetch_build_config,
)
from api.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    check_substitutions,
    describe_steps,
    PipelineConfigError,
)
from api.src.services.queue import (
    build_job_payload,
    enqueue_build_run,
    get_run_status,
    get_queue_length,
)

__all__ = [
    "verify_signature",
    "parse_webhook_payload",
    "fetch_build_config",
    "parse_pipeline_config",
    "parse_pipeline_dict",
    "check_substitutions",
    "describe_steps",
    "PipelineConfigError",
    "build_job_payload",
    "enqueue_build_run",
    "get_run_status",
    "get_queue_length",
]
