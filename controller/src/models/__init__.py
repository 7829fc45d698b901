from controller.src.models.step import (
    ExecutionStatus,
    RunStatus,
    VolumeBinding,
    MountHandle,
    MachineProfile,
    MACHINE_PROFILES,
    StepDescriptor,
    ExecutionResult,
    StepReport,
    PipelineReport,
    BuildInfo,
    PipelineJob,
)

__all__ = [
    "ExecutionStatus",
    "RunStatus",
    "VolumeBinding",
    "MountHandle",
    "MachineProfile",
    "MACHINE_PROFILES",
    "StepDescriptor",
    "ExecutionResult",
    "StepReport",
    "PipelineReport",
    "BuildInfo",
    "PipelineJob",
]
