"""Tests for pipeline variables."""

import pytest

from controller.src.models.step import BuildInfo
from controller.src.pipeline.errors import ValidationError, ValidationErrorKind
from controller.src.pipeline.substitution import resolve_variables, substitute

BUILD = BuildInfo(
    build_id="b-123",
    project_id="my-proj",
    branch_name="master",
    commit_sha="0123456789abcdef",
    repo_name="app",
)


def test_builtin_variables():
    variables = resolve_variables(BUILD)
    assert variables["BUILD_ID"] == "b-123"
    assert variables["PROJECT_ID"] == "my-proj"
    assert variables["BRANCH_NAME"] == "master"
    assert variables["TAG_NAME"] == ""
    assert variables["SHORT_SHA"] == "0123456"
    assert variables["REPO_NAME"] == "app"


def test_overrides_win_over_defaults():
    variables = resolve_variables(BUILD, {"_BUCKET": "default", "_KEEP": "1"}, {"_BUCKET": "override"})
    assert variables["_BUCKET"] == "override"
    assert variables["_KEEP"] == "1"


def test_variables_are_read_only():
    variables = resolve_variables(BUILD)
    with pytest.raises(TypeError):
        variables["BUILD_ID"] = "other"


def test_user_values_cannot_shadow_builtins():
    with pytest.raises(ValidationError) as exc:
        resolve_variables(BUILD, overrides={"BRANCH_NAME": "develop"})
    assert exc.value.kind == ValidationErrorKind.MALFORMED_SUBSTITUTION


def test_substitute_forms():
    variables = resolve_variables(BUILD, {"_ARTIFACT_BUCKET": "artifacts"})
    text = "gs://${_ARTIFACT_BUCKET}/$BRANCH_NAME-$BUILD_ID/"
    assert substitute(text, variables) == "gs://artifacts/master-b-123/"


def test_unknown_variables_are_left_alone():
    variables = resolve_variables(BUILD)
    script = "echo $HOME ${UNSET} $1"
    assert substitute(script, variables) == script


def test_escaped_dollar():
    variables = resolve_variables(BUILD)
    assert substitute("cost: $$5 on $$BRANCH_NAME", variables) == "cost: $5 on $BRANCH_NAME"


def test_awk_program_survives():
    variables = resolve_variables(BUILD)
    program = "awk '{$1=1+$1;print}'"
    assert substitute(program, variables) == program
