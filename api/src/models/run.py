from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime
from uuid import UUID

class StepResponse(BaseModel):
    id: UUID
    step_id: str
    unit: str
    args: List[str] = []
    wait_for: List[str] = []
    status: str
    exit_code: Optional[int] = None
    error: Optional[str] = None
    step_order: int
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class BuildRequest(BaseModel):
    """Explicit build submission: build file text plus run identifiers."""
    config: str
    substitutions: Dict[str, str] = Field(default_factory=dict)
    branch: str = ""
    commit_sha: str = ""
    tag: str = ""
    project_id: Optional[str] = None
    repo_name: str = ""
    triggered_by: Optional[str] = None

class BuildRunResponse(BaseModel):
    id: UUID
    status: str
    commit_sha: Optional[str] = None
    branch: Optional[str] = None
    triggered_by: Optional[str] = None
    timeout_seconds: Optional[float] = None
    machine_type: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    steps: List[StepResponse] = []

    class Config:
        from_attributes = True
