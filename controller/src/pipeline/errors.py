"""
Exceptions raised by the build engine.
"""

from enum import Enum
from typing import Optional


class BuildGraphError(Exception):
    """Base class for all build engine errors."""
    pass


class ValidationErrorKind(str, Enum):
    UNKNOWN_DEPENDENCY = "UnknownDependency"
    DUPLICATE_ID = "DuplicateId"
    MALFORMED_VOLUME = "MalformedVolume"
    CYCLE = "Cycle"
    MALFORMED_DOCUMENT = "MalformedDocument"
    MALFORMED_STEP = "MalformedStep"
    UNKNOWN_FRAGMENT = "UnknownFragment"
    MALFORMED_OPTIONS = "MalformedOptions"
    MALFORMED_SUBSTITUTION = "MalformedSubstitution"


class ValidationError(BuildGraphError):
    """Raised when a build file cannot be turned into a runnable DAG.

    Always raised before any step runs or any volume is provisioned.
    """

    def __init__(self, kind: ValidationErrorKind, message: str, step: Optional[str] = None):
        self.kind = kind
        self.message = message
        self.step = step
        prefix = f"[{kind.value}]"
        if step is not None:
            prefix = f"{prefix} step '{step}':"
        super().__init__(f"{prefix} {message}")

    def __eq__(self, other):
        if not isinstance(other, ValidationError):
            return NotImplemented
        return (self.kind, self.message, self.step) == (other.kind, other.message, other.step)

    def __hash__(self):
        return hash((self.kind, self.message, self.step))

    def to_dict(self):
        return {"kind": self.kind.value, "message": self.message, "step": self.step}


class ResourceError(BuildGraphError):
    """Raised when a volume cannot be provisioned."""

    def __init__(self, volume: str, message: str):
        self.volume = volume
        super().__init__(f"Volume '{volume}': {message}")


class RuntimeUnavailableError(BuildGraphError):
    """Raised when the container runtime cannot be reached."""
    pass
