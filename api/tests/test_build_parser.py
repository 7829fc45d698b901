"""Tests for build file parsing in the API."""

import pytest
from api.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    check_substitutions,
    describe_steps,
    PipelineConfigError,
)

def test_valid_native_build():
    config = """
name: Test Build
steps:
  - name: install
    unit: node:18
    args: [npm, ci]
  - name: test
    unit: node:18
    args: [npm, test]
"""
    raw, dag = parse_pipeline_config(config)
    assert raw["name"] == "Test Build"
    assert dag.ids == ["install", "test"]
    assert dag["test"].wait_for == ("install",)

def test_valid_cloudbuild():
    config = """
steps:
  - name: gcr.io/cloud-builders/gsutil
    id: fetch
    waitFor: ['-']
    args: ['cp', 'gs://bucket/file', '.']
  - name: gcr.io/cloud-builders/docker
    args: ['build', '.']
timeout: 1200s
"""
    _, dag = parse_pipeline_config(config)
    assert dag.ids == ["fetch", "step #1"]
    assert dag.timeout == 1200

def test_missing_steps():
    with pytest.raises(PipelineConfigError) as exc:
        parse_pipeline_config("name: Bad Build\n")
    assert exc.value.kind == "MalformedDocument"
    assert "must have 'steps'" in exc.value.message

def test_unknown_dependency():
    config = """
steps:
  - name: build
    unit: alpine
    waitFor: [fetch]
"""
    with pytest.raises(PipelineConfigError) as exc:
        parse_pipeline_config(config)
    assert exc.value.to_dict() == {
        "kind": "UnknownDependency",
        "message": "waitFor references unknown step 'fetch'",
        "step": "build",
    }

def test_empty_config():
    with pytest.raises(PipelineConfigError, match="Empty"):
        parse_pipeline_config("")

def test_invalid_yaml():
    with pytest.raises(PipelineConfigError) as exc:
        parse_pipeline_config("steps: [")
    assert exc.value.kind == "MalformedDocument"

def test_dict_parsing():
    dag = parse_pipeline_dict({"steps": [{"name": "one", "unit": "alpine", "args": ["echo", "hello"]}]})
    assert len(dag) == 1

def test_describe_steps():
    dag = parse_pipeline_dict({"steps": [
        {"name": "a", "unit": "alpine", "args": ["true"]},
        {"name": "b", "unit": "busybox", "waitFor": ["a"]},
    ]})
    assert describe_steps(dag) == [
        {"step_id": "a", "unit": "alpine", "args": ["true"], "wait_for": [], "step_order": 0},
        {"step_id": "b", "unit": "busybox", "args": [], "wait_for": ["a"], "step_order": 1},
    ]

def test_check_substitutions():
    dag = parse_pipeline_dict({
        "substitutions": {"_BUCKET": "default"},
        "steps": [{"name": "a", "unit": "alpine"}],
    })
    check_substitutions(dag, {"_BUCKET": "other"})

    with pytest.raises(PipelineConfigError) as exc:
        check_substitutions(dag, {"bucket": "other"})
    assert exc.value.kind == "MalformedSubstitution"
