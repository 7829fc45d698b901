from api.src.models.pipeline import Repository, BuildRun, BuildStep
from api.src.models.run import (
    BuildRequest,
    BuildRunResponse,
    StepResponse,
)

__all__ = [
    "Repository",
    "BuildRun",
    "BuildStep",
    "BuildRequest",
    "BuildRunResponse",
    "StepResponse",
]
