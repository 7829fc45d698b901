"""
Step and run models shared by the engine, the runtimes and the reporters.
"""

from pydantic import BaseModel
from typing import List, Optional, Dict, Any, Tuple
from datetime import datetime
from enum import Enum

class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"

class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def exit_code(self) -> int:
        return {
            RunStatus.SUCCEEDED: 0,
            RunStatus.FAILED: 1,
            RunStatus.TIMED_OUT: 2,
        }.get(self, 1)

class VolumeBinding(BaseModel):
    name: str
    path: str

    class Config:
        frozen = True

class MountHandle(BaseModel):
    name: str
    path: str  # mount point inside the step
    location: str  # backend storage reference (host dir, claim name)

    class Config:
        frozen = True

class MachineProfile(BaseModel):
    name: str = "UNSPECIFIED"
    cpus: Optional[int] = None  # None: no capacity bound
    memory_gb: Optional[float] = None

    class Config:
        frozen = True

MACHINE_PROFILES: Dict[str, MachineProfile] = {
    "UNSPECIFIED": MachineProfile(),
    "E2_MEDIUM": MachineProfile(name="E2_MEDIUM", cpus=1, memory_gb=4),
    "E2_HIGHCPU_8": MachineProfile(name="E2_HIGHCPU_8", cpus=8, memory_gb=8),
    "E2_HIGHCPU_32": MachineProfile(name="E2_HIGHCPU_32", cpus=32, memory_gb=32),
    "N1_HIGHCPU_8": MachineProfile(name="N1_HIGHCPU_8", cpus=8, memory_gb=7.2),
    "N1_HIGHCPU_32": MachineProfile(name="N1_HIGHCPU_32", cpus=32, memory_gb=28.8),
}

class StepDescriptor(BaseModel):
    id: str
    name: Optional[str] = None
    index: int
    unit: str
    entrypoint: Optional[str] = None
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = {}
    dir: Optional[str] = None
    volumes: Tuple[VolumeBinding, ...] = ()
    wait_for: Tuple[str, ...] = ()
    starts_immediately: bool = False
    timeout: Optional[float] = None

    class Config:
        frozen = True

class ExecutionResult(BaseModel):
    status: ExecutionStatus
    exit_code: Optional[int] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    output: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        frozen = True

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    @classmethod
    def skipped(cls, reason: str) -> "ExecutionResult":
        now = datetime.utcnow()
        return cls(status=ExecutionStatus.SKIPPED, reason=reason, finished_at=now)

class StepReport(BaseModel):
    id: str
    index: int
    unit: str
    result: ExecutionResult

class PipelineReport(BaseModel):
    run_id: str
    status: RunStatus
    timeout: float
    machine: MachineProfile
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    steps: List[StepReport] = []

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    @property
    def failed_steps(self) -> List[StepReport]:
        return [
            s for s in self.steps
            if s.result.status in (ExecutionStatus.FAILURE, ExecutionStatus.TIMED_OUT)
        ]

    def result_for(self, step_id: str) -> ExecutionResult:
        for s in self.steps:
            if s.id == step_id:
                return s.result
        raise KeyError(step_id)

class BuildInfo(BaseModel):
    """Built-in run identifiers exposed to steps as substitution variables."""
    build_id: str
    project_id: str = ""
    branch_name: str = ""
    tag_name: str = ""
    commit_sha: str = ""
    repo_name: str = ""

class PipelineJob(BaseModel):
    run_id: str
    config: Dict[str, Any]
    substitutions: Dict[str, str] = {}
    build: Dict[str, str] = {}
    queued_at: str
