"""
Build file parsing for the API.

Validation is the controller's: a file the API accepts is a file the worker
can run.
"""

import yaml
from typing import List, Dict, Any, Optional, Tuple

from controller.src.models.step import BuildInfo
from controller.src.pipeline.descriptors import PipelineDAG, load_pipeline
from controller.src.pipeline.errors import ValidationError
from controller.src.pipeline.substitution import resolve_variables

class PipelineConfigError(Exception):
    """Raised when a build file or its substitutions are invalid."""

    def __init__(self, message: str, kind: Optional[str] = None, step: Optional[str] = None):
        self.message = message
        self.kind = kind
        self.step = step
        super().__init__(message)

    @classmethod
    def from_validation_error(cls, error: ValidationError) -> "PipelineConfigError":
        return cls(error.message, kind=error.kind.value, step=error.step)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "step": self.step}

def load_config_text(yaml_content: str) -> Dict[str, Any]:
    """Parse YAML text into the raw build document."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PipelineConfigError(f"Invalid YAML: {e}", kind="MalformedDocument")
    if not config:
        raise PipelineConfigError("Empty build configuration", kind="MalformedDocument")
    return config

def parse_pipeline_dict(config: Dict[str, Any]) -> PipelineDAG:
    """Validate a raw build document."""
    try:
        return load_pipeline(config)
    except ValidationError as e:
        raise PipelineConfigError.from_validation_error(e)

def parse_pipeline_config(yaml_content: str) -> Tuple[Dict[str, Any], PipelineDAG]:
    """Parse and validate YAML text; returns the raw document and its DAG."""
    config = load_config_text(yaml_content)
    return config, parse_pipeline_dict(config)

def check_substitutions(dag: PipelineDAG, substitutions: Optional[Dict[str, str]]):
    """Reject user substitutions the worker would refuse."""
    try:
        resolve_variables(BuildInfo(build_id=""), dag.substitutions, substitutions)
    except ValidationError as e:
        raise PipelineConfigError.from_validation_error(e)

def describe_steps(dag: PipelineDAG) -> List[Dict[str, Any]]:
    """Step rows to persist for a run, in declaration order."""
    return [
        {
            "step_id": step.id,
            "unit": step.unit,
            "args": list(step.args),
            "wait_for": list(step.wait_for),
            "step_order": step.index,
        }
        for step in dag
    ]
