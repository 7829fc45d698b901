"""Shared fixtures: an in-process runtime and recording collaborators."""

import asyncio
import os

import pytest

from controller.src.pipeline import LocalVolumeBackend, PipelineObserver, ResourceError
from controller.src.runtime.base import StepRuntime

DATA_DIR = os.path.join(os.path.dirname(__file__), "data")


def succeed(delay: float = 0.0, output=None):
    async def behaviour(unit, on_output):
        for line in output or []:
            on_output(line)
        await asyncio.sleep(delay)
        return 0
    return behaviour


def fail(code: int = 1, delay: float = 0.0, output=None):
    async def behaviour(unit, on_output):
        for line in output or []:
            on_output(line)
        await asyncio.sleep(delay)
        return code
    return behaviour


def crash(message: str):
    async def behaviour(unit, on_output):
        raise RuntimeError(message)
    return behaviour


def _location(unit, mount_path):
    for mount in unit.mounts:
        if mount.path == mount_path:
            return mount.location
    raise AssertionError(f"{unit.step_id} has no mount at {mount_path}")


def write_file(mount_path: str, filename: str, content: str):
    async def behaviour(unit, on_output):
        with open(os.path.join(_location(unit, mount_path), filename), "w") as f:
            f.write(content)
        return 0
    return behaviour


def read_file(mount_path: str, filename: str, expected: str):
    async def behaviour(unit, on_output):
        path = os.path.join(_location(unit, mount_path), filename)
        if not os.path.exists(path):
            on_output(f"{filename}: no such file")
            return 1
        with open(path) as f:
            content = f.read()
        on_output(content)
        return 0 if content == expected else 1
    return behaviour


class FakeRuntime(StepRuntime):
    """Runs steps as coroutines chosen per step id; records what happened."""

    name = "fake"

    def __init__(self, behaviours=None):
        self.behaviours = dict(behaviours or {})
        self.units = {}
        self.started = {}
        self.finished = {}
        self.cancelled = []

    @property
    def started_ids(self):
        return list(self.started)

    async def run(self, unit, on_output):
        loop = asyncio.get_running_loop()
        self.units[unit.step_id] = unit
        self.started[unit.step_id] = loop.time()
        behaviour = self.behaviours.get(unit.step_id, succeed())
        try:
            code = await behaviour(unit, on_output)
        except asyncio.CancelledError:
            self.cancelled.append(unit.step_id)
            raise
        self.finished[unit.step_id] = loop.time()
        return code


class RecordingBackend(LocalVolumeBackend):
    def __init__(self, root, broken=()):
        super().__init__(root=root)
        self.broken = set(broken)
        self.created = []
        self.destroyed = []

    def create(self, name):
        if name in self.broken:
            raise ResourceError(name, "quota exceeded")
        self.created.append(name)
        return super().create(name)

    def destroy(self, name, location):
        self.destroyed.append(name)
        super().destroy(name, location)


class RecordingObserver(PipelineObserver):
    def __init__(self):
        self.events = []

    def run_started(self, run_id, dag, started_at):
        self.events.append(("run_started", run_id))

    def step_started(self, step, started_at):
        self.events.append(("step_started", step.id))

    def step_finished(self, step, result):
        self.events.append(("step_finished", step.id, result.status.value))

    def run_finished(self, report):
        self.events.append(("run_finished", report.status.value))


@pytest.fixture
def backend(tmp_path):
    return RecordingBackend(str(tmp_path / "volumes"))


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def android_yaml():
    with open(os.path.join(DATA_DIR, "android-build.yaml")) as f:
        return f.read()
