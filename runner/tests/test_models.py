"""Tests for outcomes, the run environment and gates."""

import pytest

from runner.src.errors import EnvironmentMutationError, GateEvaluationError
from runner.src.models import Environment, Outcome, PostCondition, RunState, worst_outcome
from runner.src.services.gates import (
    all_of,
    any_of,
    branch_is,
    env_equals,
    gate_from_config,
    negate,
)


@pytest.mark.parametrize("outcomes,expected", [
    ([], Outcome.SUCCESS),
    ([Outcome.SKIPPED, Outcome.SKIPPED], Outcome.SUCCESS),
    ([Outcome.SUCCESS, Outcome.UNSTABLE], Outcome.UNSTABLE),
    ([Outcome.UNSTABLE, Outcome.FAILURE, Outcome.SUCCESS], Outcome.FAILURE),
    ([Outcome.FAILURE, Outcome.ABORTED, Outcome.UNSTABLE], Outcome.ABORTED),
    ([Outcome.SKIPPED, Outcome.UNSTABLE, Outcome.SKIPPED], Outcome.UNSTABLE),
])
def test_worst_outcome(outcomes, expected):
    assert worst_outcome(outcomes) == expected


def test_run_state_from_outcome():
    assert RunState.from_outcome(Outcome.SUCCESS) == RunState.SUCCEEDED
    assert RunState.from_outcome(Outcome.FAILURE) == RunState.FAILED
    assert RunState.from_outcome(Outcome.ABORTED) == RunState.ABORTED
    assert not RunState.RUNNING.is_terminal
    assert RunState.UNSTABLE.is_terminal


def test_post_condition_for_outcome():
    assert PostCondition.for_outcome(Outcome.UNSTABLE) == PostCondition.UNSTABLE
    assert PostCondition.for_outcome(Outcome.ABORTED) == PostCondition.ABORTED


def test_environment_is_append_only():
    env = Environment({"BRANCH_NAME": "main"})
    env["IMAGE_TAG"] = "app:1"

    with pytest.raises(EnvironmentMutationError):
        env["BRANCH_NAME"] = "dev"

    with pytest.raises(EnvironmentMutationError):
        del env["IMAGE_TAG"]

    env.recompute("BRANCH_NAME", "release")
    assert env["BRANCH_NAME"] == "release"


def test_environment_coerces_values_to_str():
    env = Environment({"BUILD_NUMBER": 7})
    assert env["BUILD_NUMBER"] == "7"
    assert env.snapshot() == {"BUILD_NUMBER": "7"}


def test_environment_require():
    env = Environment({"EMPTY": ""})

    with pytest.raises(GateEvaluationError):
        env.require("MISSING")

    with pytest.raises(GateEvaluationError):
        env.require("EMPTY")


def test_environment_expand():
    env = Environment({"APP": "demo", "BUILD_NUMBER": "12"})

    assert env.expand("${APP}:$BUILD_NUMBER") == "demo:12"
    assert env.expand("${UNKNOWN}/$HOME_DIR") == "${UNKNOWN}/$HOME_DIR"


def test_branch_gate_glob():
    env = Environment({"BRANCH_NAME": "release/1.2"})

    assert branch_is("release/*")(env)
    assert not branch_is("main")(env)


def test_gate_combinators():
    env = Environment({"BRANCH_NAME": "main", "DEPLOY": "true"})

    assert all_of(branch_is("main"), env_equals("DEPLOY", "true"))(env)
    assert any_of(branch_is("dev"), env_equals("DEPLOY", "true"))(env)
    assert not negate(branch_is("main"))(env)


def test_gate_from_config():
    gate = gate_from_config({
        "branch": "main",
        "not": {"environment": {"SKIP_DEPLOY": "yes"}},
    })

    assert gate(Environment({"BRANCH_NAME": "main", "SKIP_DEPLOY": "no"}))
    assert not gate(Environment({"BRANCH_NAME": "main", "SKIP_DEPLOY": "yes"}))
    assert not gate(Environment({"BRANCH_NAME": "dev", "SKIP_DEPLOY": "no"}))


def test_gate_from_config_any_of():
    gate = gate_from_config({"any_of": [{"branch": "main"}, {"branch": "hotfix/*"}]})

    assert gate(Environment({"BRANCH_NAME": "hotfix/login"}))
    assert not gate(Environment({"BRANCH_NAME": "feature/x"}))


def test_gate_from_config_unknown_condition():
    with pytest.raises(GateEvaluationError):
        gate_from_config({"tag": "v1"})
