"""
Container runtime interface.

A runtime starts one isolated unit for a step, feeds its output to a
callback line by line and returns the unit's exit code. When the awaiting
task is cancelled the runtime must terminate the unit before re-raising.
"""

from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from controller.src.models.step import MachineProfile, MountHandle

OutputCallback = Callable[[str], None]


class UnitSpec(BaseModel):
    run_id: str
    step_id: str
    index: int
    image: str
    entrypoint: Optional[str] = None
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = {}
    workdir: str
    mounts: List[MountHandle] = []
    machine: MachineProfile = MachineProfile()
    timeout: Optional[float] = None


class StepRuntime:
    name = "base"

    async def run(self, unit: UnitSpec, on_output: OutputCallback) -> int:
        raise NotImplementedError
