from controller.src.pipeline.errors import (
    BuildGraphError,
    ValidationError,
    ValidationErrorKind,
    ResourceError,
    RuntimeUnavailableError,
)
from controller.src.pipeline.descriptors import (
    PipelineDAG,
    load_pipeline,
    load_pipeline_file,
    parse_pipeline_yaml,
)
from controller.src.pipeline.substitution import resolve_variables, substitute
from controller.src.pipeline.volumes import (
    MountHandle,
    VolumeBackend,
    LocalVolumeBackend,
    VolumeManager,
)
from controller.src.pipeline.executor import StepExecutor, StepLogSink, StepObserver
from controller.src.pipeline.scheduler import DependencyScheduler, ScheduleOutcome
from controller.src.pipeline.controller import (
    PipelineController,
    PipelineObserver,
    run_pipeline,
    render_report,
)

__all__ = [
    "BuildGraphError",
    "ValidationError",
    "ValidationErrorKind",
    "ResourceError",
    "RuntimeUnavailableError",
    "PipelineDAG",
    "load_pipeline",
    "load_pipeline_file",
    "parse_pipeline_yaml",
    "resolve_variables",
    "substitute",
    "MountHandle",
    "VolumeBackend",
    "LocalVolumeBackend",
    "VolumeManager",
    "StepExecutor",
    "StepLogSink",
    "StepObserver",
    "DependencyScheduler",
    "ScheduleOutcome",
    "PipelineController",
    "PipelineObserver",
    "run_pipeline",
    "render_report",
]
