from controller.src.runtime.base import StepRuntime, UnitSpec, OutputCallback
from controller.src.runtime.docker import (
    DockerRuntime,
    build_docker_command,
    build_container_name,
)

__all__ = [
    "StepRuntime",
    "UnitSpec",
    "OutputCallback",
    "DockerRuntime",
    "build_docker_command",
    "build_container_name",
]
