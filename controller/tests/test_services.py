"""Tests for the queued build service and the Redis worker."""

import asyncio
from datetime import datetime

import pytest

from conftest import FakeRuntime, fail
from controller.src import worker
from controller.src.models.step import RunStatus
from controller.src.pipeline import LocalVolumeBackend
from controller.src.services import executor as build_service
from controller.src.services import status_reporter


@pytest.fixture
def db_calls(monkeypatch):
    """Capture status writes instead of hitting the database."""
    calls = []

    def run_status(run_id, status, started_at=None, finished_at=None):
        calls.append(("run", run_id, status))

    def step_status(run_id, step_order, status, **kwargs):
        calls.append(("step", run_id, step_order, status, kwargs.get("exit_code")))

    monkeypatch.setattr(status_reporter, "update_run_status", run_status)
    monkeypatch.setattr(status_reporter, "update_step_status", step_status)
    monkeypatch.setattr(build_service, "update_run_status", run_status)
    return calls


def job(config, **extra):
    return dict({
        "run_id": "run-42",
        "config": config,
        "queued_at": datetime.utcnow().isoformat(),
    }, **extra)


CONFIG = {"steps": [
    {"name": "build", "unit": "alpine", "args": ["make"]},
    {"name": "test", "unit": "alpine", "args": ["make", "test"]},
]}


def test_execute_build_reports_status(db_calls):
    runtime = FakeRuntime({"test": fail(2)})

    report = asyncio.run(build_service.execute_build(job(CONFIG), runtime=runtime))

    assert report.status == RunStatus.FAILED
    assert db_calls[0] == ("run", "run-42", "running")
    assert ("step", "run-42", 0, "running", None) in db_calls
    assert ("step", "run-42", 0, "success", 0) in db_calls
    assert ("step", "run-42", 1, "failure", 2) in db_calls
    assert db_calls[-1] == ("run", "run-42", "failed")


def test_execute_build_uses_build_identifiers(db_calls):
    config = {"steps": [{"name": "tag", "unit": "alpine", "args": ["$BUILD_ID", "$SHORT_SHA", "${_FLAVOR}"]}]}
    runtime = FakeRuntime()

    asyncio.run(build_service.execute_build(
        job(config, build={"commit_sha": "abcdef123456", "branch_name": "main"}, substitutions={"_FLAVOR": "beta"}),
        runtime=runtime,
    ))

    assert runtime.units["tag"].args == ("run-42", "abcdef1", "beta")


def test_execute_build_rejects_cycle_without_side_effects(db_calls):
    config = {"steps": [
        {"name": "a", "unit": "alpine", "waitFor": ["b"]},
        {"name": "b", "unit": "alpine", "waitFor": ["a"]},
    ]}
    runtime = FakeRuntime()

    report = asyncio.run(build_service.execute_build(job(config), runtime=runtime))

    assert report is None
    assert runtime.started == {}
    assert db_calls == [("run", "run-42", "failed")]


def test_execute_build_rejects_shadowed_builtin(db_calls):
    runtime = FakeRuntime()

    report = asyncio.run(build_service.execute_build(
        job(CONFIG, substitutions={"BUILD_ID": "mine"}), runtime=runtime,
    ))

    assert report is None
    assert runtime.started == {}
    assert db_calls == [("run", "run-42", "failed")]


def test_volume_backend_for_local_runtime(tmp_path):
    backend = build_service.build_volume_backend(FakeRuntime(), "run-1", source_dir=str(tmp_path))
    assert isinstance(backend, LocalVolumeBackend)
    assert backend.create("workspace") == str(tmp_path)


def test_unknown_runtime():
    with pytest.raises(ValueError):
        build_service.build_runtime("podman")


class FakeRedis:
    def __init__(self, queued=None):
        self.queued = list(queued or [])
        self.status = {}

    def brpop(self, key, timeout=0):
        if self.queued:
            return key, self.queued.pop()
        return None

    def hset(self, key, field, value):
        self.status[field] = value


def test_get_next_job():
    client = FakeRedis(['{"run_id": "run-1"}'])
    assert worker.get_next_job(client) == {"run_id": "run-1"}
    assert worker.get_next_job(client) is None


def test_handle_job_records_live_status(monkeypatch):
    client = FakeRedis()

    async def execute(job_data):
        class Report:
            status = RunStatus.TIMED_OUT
        return Report()

    monkeypatch.setattr(worker, "execute_build", execute)
    asyncio.run(worker.handle_job(client, {"run_id": "run-7"}))

    assert client.status == {"run-7": "timed_out"}


def test_handle_job_survives_crash(monkeypatch):
    client = FakeRedis()
    marked = []

    async def execute(job_data):
        raise RuntimeError("cluster gone")

    monkeypatch.setattr(worker, "execute_build", execute)
    monkeypatch.setattr(worker, "update_run_status", lambda run_id, status, **kw: marked.append(status))
    asyncio.run(worker.handle_job(client, {"run_id": "run-8"}))

    assert client.status == {"run-8": "failed"}
    assert marked == ["failed"]
