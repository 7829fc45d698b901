"""
Build file parser and validator.

Turns a declarative build file into a PipelineDAG. Everything that can be
wrong with a build file is detected here, before any step runs.

Two dialects are understood:

- native: steps carry ``name`` (identity) and ``unit`` (image, ``image`` is
  accepted as an alias), start-immediately is ``startsImmediately: true``.
- cloudbuild: steps carry ``name`` (image) and ``id`` (identity),
  start-immediately is ``waitFor: ['-']``.

A document in which no step declares ``unit`` or ``image`` is read as
cloudbuild.
"""

import copy
import logging
import posixpath
import re
import yaml
from typing import List, Dict, Any, Optional, Iterator, Tuple

from controller.src.config import get_settings
from controller.src.models.step import (
    StepDescriptor,
    VolumeBinding,
    MachineProfile,
    MACHINE_PROFILES,
)
from controller.src.pipeline.errors import ValidationError, ValidationErrorKind as Kind

logger = logging.getLogger(__name__)

NATIVE = "native"
CLOUDBUILD = "cloudbuild"

START_IMMEDIATELY = "-"
WORKSPACE_VOLUME = "workspace"

_VOLUME_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_USER_SUBSTITUTION = re.compile(r"^_[A-Z0-9_]+$")
_DURATION = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)?$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

_NATIVE_KEYS = {
    "name", "unit", "image", "entrypoint", "args", "env", "dir",
    "volumes", "waitFor", "startsImmediately", "timeout",
}
_CLOUDBUILD_KEYS = {
    "name", "id", "entrypoint", "args", "env", "dir",
    "volumes", "waitFor", "timeout",
}


class PipelineDAG:
    """Validated build: steps in declaration order plus run-level options."""

    def __init__(
        self,
        steps: List[StepDescriptor],
        timeout: float,
        machine: MachineProfile,
        substitutions: Dict[str, str],
        workspace_path: str,
        name: Optional[str] = None,
    ):
        self.name = name
        self.timeout = timeout
        self.machine = machine
        self.substitutions = dict(substitutions)
        self.workspace_path = workspace_path
        self._steps: Dict[str, StepDescriptor] = {s.id: s for s in steps}
        self._dependents: Dict[str, List[str]] = {s.id: [] for s in steps}
        for step in steps:
            for pred in step.wait_for:
                self._dependents[pred].append(step.id)

    def __iter__(self) -> Iterator[StepDescriptor]:
        return iter(self._steps.values())

    def __len__(self) -> int:
        return len(self._steps)

    def __getitem__(self, step_id: str) -> StepDescriptor:
        return self._steps[step_id]

    def __contains__(self, step_id: str) -> bool:
        return step_id in self._steps

    @property
    def ids(self) -> List[str]:
        return list(self._steps)

    def dependents(self, step_id: str) -> List[str]:
        return list(self._dependents[step_id])

    def mounts_for(self, step: StepDescriptor) -> Tuple[VolumeBinding, ...]:
        """Volumes a step mounts, including the implicit workspace."""
        workspace = VolumeBinding(name=WORKSPACE_VOLUME, path=self.workspace_path)
        return (workspace,) + tuple(step.volumes)

    def volume_references(self) -> Dict[str, int]:
        """Number of steps referencing each volume name."""
        counts: Dict[str, int] = {}
        for step in self:
            for binding in self.mounts_for(step):
                counts[binding.name] = counts.get(binding.name, 0) + 1
        return counts


def parse_pipeline_yaml(yaml_content: str, **kwargs) -> PipelineDAG:
    """Parse a build file from YAML text."""
    try:
        raw = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise ValidationError(Kind.MALFORMED_DOCUMENT, f"Invalid YAML: {e}")
    return load_pipeline(raw, **kwargs)


def load_pipeline_file(path: str, **kwargs) -> PipelineDAG:
    """Parse a build file from disk."""
    with open(path, "r") as f:
        return parse_pipeline_yaml(f.read(), **kwargs)


def detect_dialect(raw_steps: List[Any]) -> str:
    for step in raw_steps:
        if isinstance(step, dict) and ("unit" in step or "image" in step):
            return NATIVE
    return CLOUDBUILD


def load_pipeline(
    raw_config: Any,
    dialect: Optional[str] = None,
    workspace_path: Optional[str] = None,
    default_timeout: Optional[float] = None,
) -> PipelineDAG:
    """Validate a parsed build file and build its DAG.

    Raises ValidationError on the first problem found. The result depends
    only on the arguments, so validating the same input twice gives the
    same DAG or the same error.
    """
    settings = get_settings()
    workspace_path = workspace_path or settings.workspace_path
    if default_timeout is None:
        default_timeout = settings.default_timeout

    if not raw_config:
        raise ValidationError(Kind.MALFORMED_DOCUMENT, "Empty build configuration")
    if not isinstance(raw_config, dict):
        raise ValidationError(Kind.MALFORMED_DOCUMENT, "Build configuration must be a mapping")

    name = raw_config.get("name")
    if name is not None and not isinstance(name, str):
        raise ValidationError(Kind.MALFORMED_DOCUMENT, "Build 'name' must be a string")

    raw_steps = raw_config.get("steps")
    if raw_steps is None:
        raise ValidationError(Kind.MALFORMED_DOCUMENT, "Build must have 'steps' defined")
    if not isinstance(raw_steps, list):
        raise ValidationError(Kind.MALFORMED_DOCUMENT, "Build 'steps' must be a list")
    if len(raw_steps) == 0:
        raise ValidationError(Kind.MALFORMED_DOCUMENT, "Build must have at least one step")

    fragments = _load_fragments(raw_config.get("fragments"))

    dialect = dialect or detect_dialect(raw_steps + list(fragments.values()))
    if dialect not in (NATIVE, CLOUDBUILD):
        raise ValueError(f"Unknown dialect: {dialect}")

    partial = []
    for index, raw_step in enumerate(raw_steps):
        partial.append(_normalize_step(raw_step, index, dialect, fragments, workspace_path))

    seen = set()
    for fields in partial:
        if fields["id"] in seen:
            raise ValidationError(Kind.DUPLICATE_ID, "Step id is declared more than once", fields["id"])
        seen.add(fields["id"])

    steps = []
    declared: List[str] = []
    for fields in partial:
        wait_for = fields.pop("wait_for")
        if wait_for is None:
            # No waitFor and no start-immediately: wait for every earlier step.
            wait_for = [] if fields["starts_immediately"] else list(declared)
        for dep in wait_for:
            if dep not in seen:
                raise ValidationError(
                    Kind.UNKNOWN_DEPENDENCY,
                    f"waitFor references unknown step '{dep}'",
                    fields["id"],
                )
        steps.append(StepDescriptor(wait_for=tuple(_unique(wait_for)), **fields))
        declared.append(fields["id"])

    _check_acyclic(steps)

    timeout = _parse_duration(raw_config.get("timeout", default_timeout))
    if timeout is None or timeout <= 0:
        raise ValidationError(Kind.MALFORMED_OPTIONS, f"Invalid build timeout: {raw_config.get('timeout')!r}")

    return PipelineDAG(
        steps=steps,
        timeout=timeout,
        machine=_load_machine(raw_config.get("options")),
        substitutions=validate_substitutions(raw_config.get("substitutions") or {}),
        workspace_path=workspace_path,
        name=name,
    )


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` into a copy of ``base``.

    Mappings merge recursively, anything else in ``override`` replaces the
    base value. Neither input is mutated.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_substitutions(values: Any) -> Dict[str, str]:
    """Check user substitution names and coerce values to strings."""
    if not isinstance(values, dict):
        raise ValidationError(Kind.MALFORMED_SUBSTITUTION, "Substitutions must be a mapping")
    result = {}
    for key, value in values.items():
        if not isinstance(key, str) or not _USER_SUBSTITUTION.match(key):
            raise ValidationError(
                Kind.MALFORMED_SUBSTITUTION,
                f"Substitution '{key}' must start with '_' and use only A-Z, 0-9 and '_'",
            )
        if isinstance(value, (dict, list)) or value is None:
            raise ValidationError(Kind.MALFORMED_SUBSTITUTION, f"Substitution '{key}' must be a scalar")
        result[key] = str(value)
    return result


def _unique(items: List[str]) -> List[str]:
    out = []
    for item in items:
        if item not in out:
            out.append(item)
    return out


def _load_fragments(raw: Any) -> Dict[str, Dict[str, Any]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError(Kind.MALFORMED_DOCUMENT, "'fragments' must be a mapping")
    fragments = {}
    for name, block in raw.items():
        if not isinstance(block, dict):
            raise ValidationError(Kind.MALFORMED_DOCUMENT, f"Fragment '{name}' must be a mapping")
        if "extends" in block:
            raise ValidationError(Kind.MALFORMED_DOCUMENT, f"Fragment '{name}' cannot use 'extends'")
        fragments[name] = block
    return fragments


def _apply_fragments(raw_step: Dict[str, Any], fragments: Dict[str, Dict[str, Any]], label: str) -> Dict[str, Any]:
    step = copy.deepcopy(raw_step)
    extends = step.pop("extends", None)
    if extends is None:
        return step
    if isinstance(extends, str):
        extends = [extends]
    if not isinstance(extends, list):
        raise ValidationError(Kind.MALFORMED_STEP, "'extends' must be a string or a list", label)

    merged: Dict[str, Any] = {}
    for fragment_name in extends:
        if fragment_name not in fragments:
            raise ValidationError(Kind.UNKNOWN_FRAGMENT, f"Unknown fragment '{fragment_name}'", label)
        merged = deep_merge(merged, fragments[fragment_name])
    return deep_merge(merged, step)


def _normalize_step(
    raw_step: Any,
    index: int,
    dialect: str,
    fragments: Dict[str, Dict[str, Any]],
    workspace_path: str,
) -> Dict[str, Any]:
    label = f"step #{index}"
    if not isinstance(raw_step, dict):
        raise ValidationError(Kind.MALFORMED_STEP, "Step must be a mapping", label)

    step = _apply_fragments(raw_step, fragments, label)

    if dialect == CLOUDBUILD:
        unit = step.get("name")
        step_name = step.get("id")
        known = _CLOUDBUILD_KEYS
    else:
        unit = step.get("unit", step.get("image"))
        step_name = step.get("name")
        known = _NATIVE_KEYS

    if step_name is not None:
        if not isinstance(step_name, str) or not step_name.strip():
            raise ValidationError(Kind.MALFORMED_STEP, "Step id must be a non-empty string", label)
        label = step_name

    for key in sorted(set(step) - known):
        logger.warning(f"Ignoring unsupported field '{key}' in {label}")

    if not isinstance(unit, str) or not unit.strip():
        raise ValidationError(Kind.MALFORMED_STEP, "Step must declare the image it runs", label)

    entrypoint = step.get("entrypoint")
    if entrypoint is not None and not isinstance(entrypoint, str):
        raise ValidationError(Kind.MALFORMED_STEP, "'entrypoint' must be a string", label)

    directory = step.get("dir")
    if directory is not None and not isinstance(directory, str):
        raise ValidationError(Kind.MALFORMED_STEP, "'dir' must be a string", label)

    timeout = None
    if step.get("timeout") is not None:
        timeout = _parse_duration(step["timeout"])
        if timeout is None or timeout <= 0:
            raise ValidationError(Kind.MALFORMED_STEP, f"Invalid step timeout: {step['timeout']!r}", label)

    wait_for, starts_immediately = _parse_wait_for(step, dialect, label)

    return {
        "id": step_name if step_name is not None else label,
        "name": step_name,
        "index": index,
        "unit": unit,
        "entrypoint": entrypoint,
        "args": tuple(_parse_args(step.get("args"), label)),
        "env": _parse_env(step.get("env"), label),
        "dir": directory,
        "volumes": tuple(_parse_volumes(step.get("volumes"), label, workspace_path)),
        "wait_for": wait_for,
        "starts_immediately": starts_immediately,
        "timeout": timeout,
    }


def _parse_wait_for(step: Dict[str, Any], dialect: str, label: str) -> Tuple[Optional[List[str]], bool]:
    raw = step.get("waitFor")
    # Cloud Build files only know the "-" sentinel.
    starts_immediately = step.get("startsImmediately", False) if dialect != CLOUDBUILD else False
    if not isinstance(starts_immediately, bool):
        raise ValidationError(Kind.MALFORMED_STEP, "'startsImmediately' must be a boolean", label)

    if raw is None:
        return None, starts_immediately
    if not isinstance(raw, list) or not all(isinstance(d, str) for d in raw):
        raise ValidationError(Kind.MALFORMED_STEP, "'waitFor' must be a list of step ids", label)

    if START_IMMEDIATELY in raw:
        if len(raw) != 1:
            raise ValidationError(Kind.MALFORMED_STEP, "'-' cannot be combined with other waitFor ids", label)
        return [], True

    if starts_immediately and raw:
        raise ValidationError(Kind.MALFORMED_STEP, "'startsImmediately' cannot be combined with 'waitFor'", label)
    return list(raw), starts_immediately or not raw


def _parse_args(raw: Any, label: str) -> List[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(Kind.MALFORMED_STEP, "'args' must be a list", label)
    args = []
    for j, arg in enumerate(raw):
        if isinstance(arg, bool) or not isinstance(arg, (str, int, float)):
            raise ValidationError(Kind.MALFORMED_STEP, f"Argument {j} must be a string", label)
        args.append(str(arg))
    return args


def _parse_env(raw: Any, label: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if isinstance(raw, list):
        pairs = []
        for entry in raw:
            if not isinstance(entry, str) or "=" not in entry:
                raise ValidationError(Kind.MALFORMED_STEP, f"Environment entry {entry!r} must look like KEY=VALUE", label)
            key, value = entry.split("=", 1)
            pairs.append((key, value))
    elif isinstance(raw, dict):
        pairs = list(raw.items())
    else:
        raise ValidationError(Kind.MALFORMED_STEP, "'env' must be a mapping or a list of KEY=VALUE", label)

    env = {}
    for key, value in pairs:
        if not isinstance(key, str) or not _ENV_NAME.match(key):
            raise ValidationError(Kind.MALFORMED_STEP, f"Invalid environment variable name {key!r}", label)
        if isinstance(value, (dict, list)):
            raise ValidationError(Kind.MALFORMED_STEP, f"Environment variable {key} must be a scalar", label)
        env[key] = "" if value is None else str(value)
    return env


def _parse_volumes(raw: Any, label: str, workspace_path: str) -> List[VolumeBinding]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(Kind.MALFORMED_VOLUME, "'volumes' must be a list", label)

    bindings = []
    names = set()
    paths = set()
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationError(Kind.MALFORMED_VOLUME, "Volume must be a mapping with 'name' and 'path'", label)
        name = entry.get("name")
        path = entry.get("path")
        if not isinstance(name, str) or not _VOLUME_NAME.match(name):
            raise ValidationError(Kind.MALFORMED_VOLUME, f"Invalid volume name {name!r}", label)
        if name == WORKSPACE_VOLUME:
            raise ValidationError(Kind.MALFORMED_VOLUME, f"Volume name '{WORKSPACE_VOLUME}' is reserved", label)
        if not isinstance(path, str) or not posixpath.isabs(path):
            raise ValidationError(Kind.MALFORMED_VOLUME, f"Volume path {path!r} must be absolute", label)
        if ".." in path.split("/"):
            raise ValidationError(Kind.MALFORMED_VOLUME, f"Volume path {path!r} cannot contain '..'", label)
        normalized = posixpath.normpath(path)
        if normalized == workspace_path or normalized.startswith(workspace_path.rstrip("/") + "/"):
            raise ValidationError(Kind.MALFORMED_VOLUME, f"Volume path {path!r} overlaps the workspace", label)
        if name in names:
            raise ValidationError(Kind.MALFORMED_VOLUME, f"Volume '{name}' is mounted twice", label)
        if normalized in paths:
            raise ValidationError(Kind.MALFORMED_VOLUME, f"Path {path!r} is used by two volumes", label)
        names.add(name)
        paths.add(normalized)
        bindings.append(VolumeBinding(name=name, path=normalized))
    return bindings


def _parse_duration(raw: Any) -> Optional[float]:
    """Parse '1800s', '30m', '1.5h', '500ms' or a number of seconds."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    if not isinstance(raw, str):
        return None
    match = _DURATION.match(raw.strip())
    if not match:
        return None
    value, unit = match.groups()
    return float(value) * _DURATION_UNITS[unit or "s"]


def _load_machine(options: Any) -> MachineProfile:
    if options is None:
        return MACHINE_PROFILES["UNSPECIFIED"]
    if not isinstance(options, dict):
        raise ValidationError(Kind.MALFORMED_OPTIONS, "'options' must be a mapping")
    machine_type = options.get("machineType", "UNSPECIFIED")
    if machine_type not in MACHINE_PROFILES:
        raise ValidationError(Kind.MALFORMED_OPTIONS, f"Unknown machineType {machine_type!r}")
    return MACHINE_PROFILES[machine_type]


def _check_acyclic(steps: List[StepDescriptor]) -> None:
    """Kahn's algorithm; reports one cycle if the graph is not a DAG."""
    preds = {s.id: list(s.wait_for) for s in steps}
    incoming = {sid: len(p) for sid, p in preds.items()}
    outgoing: Dict[str, List[str]] = {sid: [] for sid in preds}
    for sid, plist in preds.items():
        for p in plist:
            outgoing[p].append(sid)

    ready = [sid for sid in preds if incoming[sid] == 0]
    visited = 0
    while ready:
        sid = ready.pop()
        visited += 1
        for child in outgoing[sid]:
            incoming[child] -= 1
            if incoming[child] == 0:
                ready.append(child)

    if visited == len(preds):
        return

    # Every node left has a predecessor that is also left, so walking
    # predecessors from any of them must come back around.
    remaining = [sid for sid in preds if incoming[sid] > 0]
    path: List[str] = []
    position: Dict[str, int] = {}
    node = remaining[0]
    while node not in position:
        position[node] = len(path)
        path.append(node)
        node = next(p for p in preds[node] if incoming[p] > 0)
    cycle = path[position[node]:] + [node]
    raise ValidationError(
        Kind.CYCLE,
        "waitFor cycle: " + " -> ".join(cycle),
        cycle[0],
    )
