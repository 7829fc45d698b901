from controller.src.services.executor import (
    execute_build,
    build_runtime,
    build_volume_backend,
)
from controller.src.services.status_reporter import (
    DatabaseStatusReporter,
    update_run_status,
    update_step_status,
)

__all__ = [
    "execute_build",
    "build_runtime",
    "build_volume_backend",
    "DatabaseStatusReporter",
    "update_run_status",
    "update_step_status",
]
