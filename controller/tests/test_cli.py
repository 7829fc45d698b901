"""Tests for the ``run`` command exit codes."""

import pytest

from conftest import FakeRuntime, fail, succeed
from controller.src import main as cli
from controller.src.services import executor as build_service

BUILD_FILE = """
steps:
- name: compile
  unit: gcc
  args: ['make']
- name: package
  unit: alpine
  args: ['tar', 'czf', 'out-${_VERSION}.tgz', 'build']
timeout: 500ms
"""


@pytest.fixture
def build_file(tmp_path):
    path = tmp_path / "buildgraph.yaml"
    path.write_text(BUILD_FILE)
    return str(path)


def use_runtime(monkeypatch, runtime):
    monkeypatch.setattr(build_service, "build_runtime", lambda name=None: runtime)
    return runtime


def test_run_succeeds(monkeypatch, build_file, tmp_path):
    runtime = use_runtime(monkeypatch, FakeRuntime())

    code = cli.main(["run", build_file, "-s", "_VERSION=1.2", "--source", str(tmp_path)])

    assert code == 0
    assert runtime.units["package"].args[2] == "out-1.2.tgz"
    assert runtime.units["package"].mounts[0].location == str(tmp_path)


def test_run_failure(monkeypatch, build_file):
    use_runtime(monkeypatch, FakeRuntime({"compile": fail(2)}))
    assert cli.main(["run", build_file]) == 1


def test_run_timeout(monkeypatch, build_file):
    use_runtime(monkeypatch, FakeRuntime({"compile": succeed(5)}))
    assert cli.main(["run", build_file]) == 2


def test_invalid_build_file(monkeypatch, tmp_path):
    runtime = use_runtime(monkeypatch, FakeRuntime())
    path = tmp_path / "cycle.yaml"
    path.write_text("steps:\n- {name: a, unit: x, waitFor: [b]}\n- {name: b, unit: x, waitFor: [a]}\n")

    assert cli.main(["run", str(path)]) == cli.EXIT_INVALID
    assert runtime.started == {}


def test_missing_build_file(tmp_path):
    assert cli.main(["run", str(tmp_path / "nope.yaml")]) == cli.EXIT_INVALID


def test_bad_substitution_flag(monkeypatch, build_file):
    use_runtime(monkeypatch, FakeRuntime())
    assert cli.main(["run", build_file, "-s", "lowercase=1"]) == cli.EXIT_INVALID
