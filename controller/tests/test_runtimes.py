"""Tests for the Docker runtime and Kubernetes Job construction."""

import asyncio
import os
import stat

import pytest

from controller.src.k8s.job_builder import (
    build_claim_name,
    build_job,
    build_job_name,
    build_volume_claim,
    get_job_status,
)
from controller.src.models.step import MACHINE_PROFILES, MountHandle
from controller.src.pipeline.errors import RuntimeUnavailableError
from controller.src.runtime.base import UnitSpec
from controller.src.runtime.docker import DockerRuntime, build_container_name, build_docker_command


def make_unit(**overrides):
    fields = dict(
        run_id="run-1",
        step_id="unit_tests",
        index=8,
        image="gcr.io/my-proj/android:28",
        args=("./gradlew", "check"),
        env={"TERM": "dumb", "BRANCH_NAME": "master"},
        workdir="/workspace",
        mounts=[
            MountHandle(name="workspace", path="/workspace", location="/tmp/bg/workspace"),
            MountHandle(name="build_cache", path="/build_cache", location="/tmp/bg/build_cache"),
        ],
    )
    fields.update(overrides)
    return UnitSpec(**fields)


def test_container_name_is_stable():
    assert build_container_name("run-1", 3) == build_container_name("run-1", 3)
    assert build_container_name("run-1", 3) != build_container_name("run-2", 3)
    assert build_container_name("run-1", 3).endswith("-3")


def test_docker_command():
    command = build_docker_command(make_unit(entrypoint="bash"), "docker")

    assert command[:3] == ["docker", "run", "--rm"]
    assert command[command.index("--workdir") + 1] == "/workspace"
    assert "/tmp/bg/workspace:/workspace" in command
    assert "/tmp/bg/build_cache:/build_cache" in command
    envs = [command[i + 1] for i, arg in enumerate(command) if arg == "--env"]
    assert envs == ["BRANCH_NAME=master", "TERM=dumb"]
    assert command[command.index("--entrypoint") + 1] == "bash"
    assert command[-3:] == ["gcr.io/my-proj/android:28", "./gradlew", "check"]
    assert "--cpus" not in command


def test_docker_command_cpu_limit():
    command = build_docker_command(make_unit(machine=MACHINE_PROFILES["N1_HIGHCPU_8"]))
    assert command[command.index("--cpus") + 1] == "8"


def test_docker_missing_binary():
    runtime = DockerRuntime(docker_binary="/nonexistent/docker-binary")

    with pytest.raises(RuntimeUnavailableError):
        asyncio.run(runtime.run(make_unit(), lambda line: None))


def test_job_name_is_dns_safe():
    name = build_job_name("run-1", 7, "step #7")
    assert name == name.lower()
    assert len(name) <= 63
    assert all(c.isalnum() or c == "-" for c in name)


def test_build_job():
    unit = make_unit(entrypoint="bash", timeout=90.5)
    job = build_job(unit)

    assert job.metadata.name == build_job_name("run-1", 8, "unit_tests")
    assert job.spec.backoff_limit == 0
    assert job.spec.active_deadline_seconds == 91

    pod = job.spec.template.spec
    assert pod.restart_policy == "Never"
    claims = [v.persistent_volume_claim.claim_name for v in pod.volumes]
    assert claims == ["/tmp/bg/workspace", "/tmp/bg/build_cache"]

    container = pod.containers[0]
    assert container.image == "gcr.io/my-proj/android:28"
    assert container.command == ["bash"]
    assert container.args == ["./gradlew", "check"]
    assert container.working_dir == "/workspace"
    assert [m.mount_path for m in container.volume_mounts] == ["/workspace", "/build_cache"]
    assert {e.name: e.value for e in container.env} == {"TERM": "dumb", "BRANCH_NAME": "master"}


def test_build_job_resources_follow_machine():
    job = build_job(make_unit(machine=MACHINE_PROFILES["E2_HIGHCPU_8"]))
    limits = job.spec.template.spec.containers[0].resources.limits
    assert limits == {"cpu": "8", "memory": "8192Mi"}


def test_build_volume_claim():
    claim = build_volume_claim("run-1", "build_cache")

    assert claim.metadata.name == build_claim_name("run-1", "build_cache")
    assert claim.spec.resources.requests["storage"]
    assert claim.metadata.labels["app"] == "buildgraph"


class _Status:
    def __init__(self, succeeded=None, failed=None, active=None):
        self.succeeded = succeeded
        self.failed = failed
        self.active = active


class _Job:
    def __init__(self, status):
        self.status = status


@pytest.mark.parametrize("status, expected", [
    (None, "pending"),
    (_Status(succeeded=1), "succeeded"),
    (_Status(failed=1), "failed"),
    (_Status(active=1), "running"),
    (_Status(), "pending"),
])
def test_get_job_status(status, expected):
    assert get_job_status(_Job(status)) == expected


def fake_docker(tmp_path, body):
    """A ``docker`` stand-in: ``kill`` is a no-op, ``run`` executes ``body``."""
    path = tmp_path / "docker"
    path.write_text(
        "#!/bin/sh\n"
        'if [ "$1" = kill ]; then exit 0; fi\n'
        f"echo $$ > {tmp_path / 'pid'}\n"
        f"{body}\n"
    )
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return str(path)


def process_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def test_docker_streams_long_lines(tmp_path):
    docker = fake_docker(tmp_path, "head -c 70000 /dev/zero | tr '\\0' x; echo; echo done; printf tail")
    lines = []

    code = asyncio.run(DockerRuntime(docker_binary=docker).run(make_unit(), lines.append))

    assert code == 0
    assert lines == ["x" * 70000, "done", "tail"]


def test_docker_exit_code(tmp_path):
    docker = fake_docker(tmp_path, "echo compiling; exit 3")
    lines = []

    assert asyncio.run(DockerRuntime(docker_binary=docker).run(make_unit(), lines.append)) == 3
    assert lines == ["compiling"]


def test_docker_process_killed_when_output_handler_fails(tmp_path):
    docker = fake_docker(tmp_path, "echo started; exec sleep 30")

    def on_output(line):
        raise RuntimeError("log sink broken")

    with pytest.raises(RuntimeError):
        asyncio.run(DockerRuntime(docker_binary=docker).run(make_unit(), on_output))

    pid = int((tmp_path / "pid").read_text())
    assert not process_alive(pid)


def test_docker_process_killed_on_cancel(tmp_path):
    docker = fake_docker(tmp_path, "echo started; exec sleep 30")

    async def run():
        task = asyncio.create_task(DockerRuntime(docker_binary=docker).run(make_unit(), lambda line: None))
        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())

    pid = int((tmp_path / "pid").read_text())
    assert not process_alive(pid)
