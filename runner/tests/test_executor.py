"""Tests for the pipeline executor."""

import asyncio
import time

import pytest

from runner.src.errors import (
    ConcurrentRunRejected,
    InvalidRunTransition,
    PipelineDefinitionError,
    StageActionFailure,
)
from runner.src.models import Outcome, PostCondition, RunConfig, RunState, Stage
from runner.src.services.executor import PipelineRunner, get_runner
from runner.src.services.gates import branch_is


def run_stages(stages, config=None, **kwargs):
    runner = PipelineRunner("test-pipeline")
    return asyncio.run(runner.execute(stages, config or RunConfig(), **kwargs))


class Recorder:
    """Collects which actions and hooks ran, in order."""

    def __init__(self):
        self.calls = []

    def action(self, name, outcome=None, raises=None, sets=None):
        def fn(ctx):
            self.calls.append(f"action:{name}")
            if sets:
                for key, value in sets.items():
                    ctx.env[key] = value
            if raises:
                raise raises
            return outcome
        return fn

    def hook(self, label):
        def fn(*args):
            self.calls.append(f"hook:{label}")
        return fn


def java_pipeline(rec, build_fails=False):
    return [
        Stage("Checkout", rec.action("Checkout", sets={"commitId": "abc123"})),
        Stage("Build", rec.action("Build", raises=StageActionFailure("mvn exited with 1") if build_fails else None)),
        Stage("Deploy", rec.action("Deploy"), gate=branch_is("main")),
    ]


def test_failed_build_halts_deploy_on_main():
    rec = Recorder()
    run = run_stages(java_pipeline(rec, build_fails=True), environment={"BRANCH_NAME": "main"})

    assert run.outcomes == [Outcome.SUCCESS, Outcome.FAILURE, Outcome.SKIPPED]
    assert run.stage("Deploy").skip_reason == "halted"
    assert run.outcome == Outcome.FAILURE
    assert run.state == RunState.FAILED
    assert "action:Deploy" not in rec.calls
    assert run.environment["commitId"] == "abc123"
    assert "mvn exited with 1" in run.stage("Build").error


def test_dev_branch_skips_deploy_gate():
    rec = Recorder()
    run = run_stages(java_pipeline(rec), environment={"BRANCH_NAME": "dev"})

    assert run.outcomes == [Outcome.SUCCESS, Outcome.SUCCESS, Outcome.SKIPPED]
    assert run.stage("Deploy").skip_reason == "gate"
    assert run.outcome == Outcome.SUCCESS
    assert run.state == RunState.SUCCEEDED
    assert "action:Deploy" not in rec.calls


def test_blocking_build_past_deadline_aborts_run():
    rec = Recorder()

    async def slow_build(ctx):
        rec.calls.append("action:Build")
        await asyncio.sleep(10)

    stages = [
        Stage("Checkout", rec.action("Checkout")),
        Stage("Build", slow_build),
        Stage("Deploy", rec.action("Deploy")),
    ]
    start = time.monotonic()
    run = run_stages(stages, RunConfig(timeout_seconds=0.2))

    assert time.monotonic() - start < 5
    assert run.state == RunState.ABORTED
    assert run.outcome == Outcome.ABORTED
    assert run.stage("Build").outcome == Outcome.ABORTED
    assert run.stage("Deploy").outcome == Outcome.SKIPPED
    assert run.stage("Deploy").skip_reason == "timeout"
    assert "action:Deploy" not in rec.calls


def test_sync_action_past_deadline_is_abandoned_and_run_aborted():
    rec = Recorder()

    def blocking(ctx):
        time.sleep(0.5)

    stages = [Stage("Build", blocking), Stage("Package", rec.action("Package"))]
    run = run_stages(stages, RunConfig(timeout_seconds=0.1))

    assert run.outcomes == [Outcome.ABORTED, Outcome.SKIPPED]
    assert run.state == RunState.ABORTED
    assert rec.calls == []


def test_cancelled_flag_set_on_timeout():
    seen = {}

    def cooperative(ctx):
        for _ in range(50):
            if ctx.cancelled.is_set():
                seen["cancelled"] = True
                return
            time.sleep(0.02)

    run = run_stages([Stage("Build", cooperative)], RunConfig(timeout_seconds=0.1))

    assert run.outcome == Outcome.ABORTED
    # asyncio.run waits for the worker thread, which saw the flag and stopped
    assert seen == {"cancelled": True}


def test_check_cancelled_stops_sync_loop():
    steps = []

    def polling(ctx):
        for i in range(50):
            ctx.check_cancelled()
            steps.append(i)
            time.sleep(0.02)

    run = run_stages([Stage("Build", polling)], RunConfig(timeout_seconds=0.1))

    assert run.outcome == Outcome.ABORTED
    assert "timeout" in run.stage("Build").error
    assert 0 < len(steps) < 50


def test_aggregate_is_worst_outcome_and_unstable_does_not_halt():
    rec = Recorder()
    stages = [
        Stage("Test", rec.action("Test", outcome=Outcome.UNSTABLE)),
        Stage("Scan", rec.action("Scan")),
    ]
    run = run_stages(stages)

    assert run.outcomes == [Outcome.UNSTABLE, Outcome.SUCCESS]
    assert run.outcome == Outcome.UNSTABLE
    assert run.state == RunState.UNSTABLE
    assert rec.calls == ["action:Test", "action:Scan"]


def test_skipped_stages_do_not_affect_aggregate():
    rec = Recorder()
    stages = [
        Stage("Build", rec.action("Build")),
        Stage("Deploy", rec.action("Deploy"), gate=lambda env: False),
    ]
    run = run_stages(stages)

    assert run.outcome == Outcome.SUCCESS


def test_hooks_run_outcome_then_always_exactly_once():
    rec = Recorder()
    stages = [
        Stage("Checkout", rec.action("Checkout"), post={
            PostCondition.SUCCESS: rec.hook("checkout-success"),
            PostCondition.ALWAYS: rec.hook("checkout-always"),
        }),
        Stage("Build", rec.action("Build", raises=RuntimeError("boom")), post={
            PostCondition.ALWAYS: rec.hook("build-always"),
            PostCondition.FAILURE: rec.hook("build-failure"),
            PostCondition.SUCCESS: rec.hook("build-success"),
        }),
        Stage("Deploy", rec.action("Deploy"), post={
            PostCondition.ALWAYS: rec.hook("deploy-always"),
        }),
    ]
    run = run_stages(stages, post={
        PostCondition.FAILURE: rec.hook("run-failure"),
        PostCondition.ALWAYS: rec.hook("run-always"),
        PostCondition.SUCCESS: rec.hook("run-success"),
    })

    assert rec.calls == [
        "action:Checkout",
        "hook:checkout-success",
        "hook:checkout-always",
        "action:Build",
        "hook:build-failure",
        "hook:build-always",
        "hook:run-failure",
        "hook:run-always",
    ]
    assert run.outcome == Outcome.FAILURE


def test_aborted_stage_runs_aborted_then_always_hooks():
    calls = []

    async def slow_build(ctx):
        await asyncio.sleep(5)

    def hook(label):
        def fn(ctx, result):
            calls.append((label, result.outcome, ctx.cancelled.is_set()))
            ctx.check_cancelled()
        return fn

    stages = [
        Stage("Build", slow_build, post={
            PostCondition.ALWAYS: hook("always"),
            PostCondition.ABORTED: hook("aborted"),
            PostCondition.FAILURE: hook("failure"),
        }),
        Stage("Deploy", lambda ctx: None, post={PostCondition.ALWAYS: hook("deploy-always")}),
    ]
    run = run_stages(stages, RunConfig(timeout_seconds=0.2))

    assert run.outcomes == [Outcome.ABORTED, Outcome.SKIPPED]
    assert calls == [
        ("aborted", Outcome.ABORTED, False),
        ("always", Outcome.ABORTED, False),
    ]
    assert run.hook_errors == []


def test_hook_failure_is_logged_not_escalated():
    def bad_hook(ctx, result):
        raise RuntimeError("notify failed")

    stages = [Stage("Build", lambda ctx: None, post={PostCondition.ALWAYS: bad_hook})]
    run = run_stages(stages)

    assert run.outcome == Outcome.SUCCESS
    assert len(run.hook_errors) == 1
    assert "notify failed" in run.hook_errors[0]


def test_hook_timeout_is_swallowed():
    async def slow_hook(run):
        await asyncio.sleep(5)

    run = run_stages(
        [Stage("Build", lambda ctx: None)],
        RunConfig(hook_timeout_seconds=0.1),
        post={PostCondition.ALWAYS: slow_hook},
    )

    assert run.state == RunState.SUCCEEDED
    assert "timed out" in run.hook_errors[0]


def test_run_hooks_see_final_environment_and_outcomes():
    seen = {}

    def on_always(run):
        seen["env"] = run.environment.snapshot()
        seen["outcomes"] = list(run.outcomes)
        seen["state"] = run.state

    stages = [Stage("Build", lambda ctx: ctx.env.__setitem__("IMAGE_TAG", "app:7"))]
    run_stages(stages, post={PostCondition.ALWAYS: on_always})

    assert seen["env"]["IMAGE_TAG"] == "app:7"
    assert seen["outcomes"] == [Outcome.SUCCESS]
    assert seen["state"] == RunState.SUCCEEDED


def test_environment_mutations_visible_forward_only():
    observed = []

    def first(ctx):
        observed.append(("first", ctx.env.get("COMMIT")))

    def second(ctx):
        ctx.env["COMMIT"] = "abc123"

    def gate(env):
        observed.append(("gate", env.get("COMMIT")))
        return True

    def third(ctx):
        observed.append(("third", ctx.env.get("COMMIT")))

    run_stages([
        Stage("First", first),
        Stage("Second", second),
        Stage("Third", third, gate=gate),
    ])

    assert observed == [("first", None), ("gate", "abc123"), ("third", "abc123")]


def test_gate_missing_key_is_stage_failure():
    rec = Recorder()
    stages = [
        Stage("Deploy", rec.action("Deploy"), gate=branch_is("main")),
        Stage("Notify", rec.action("Notify")),
    ]
    run = run_stages(stages)

    assert run.outcomes == [Outcome.FAILURE, Outcome.SKIPPED]
    assert "BRANCH_NAME" in run.stage("Deploy").error
    assert rec.calls == []


def test_async_action_and_captured_output():
    async def build(ctx):
        ctx.log("compiling")
        await asyncio.sleep(0)
        ctx.log("done")

    run = run_stages([Stage("Build", build)])

    assert run.stage("Build").output == "compiling\ndone"
    assert run.stage("Build").outcome == Outcome.SUCCESS


def test_invalid_action_return_is_failure():
    run = run_stages([Stage("Build", lambda ctx: "ok")])

    assert run.stage("Build").outcome == Outcome.FAILURE
    assert "invalid outcome" in run.stage("Build").error


def test_empty_or_duplicate_stages_rejected():
    with pytest.raises(PipelineDefinitionError):
        run_stages([])

    with pytest.raises(PipelineDefinitionError, match="Duplicate"):
        run_stages([Stage("Build", lambda ctx: None), Stage("Build", lambda ctx: None)])


def test_environment_seeded_with_run_metadata():
    run = run_stages([Stage("Build", lambda ctx: None)], build_number=42)

    assert run.environment["BUILD_NUMBER"] == "42"
    assert run.environment["RUN_ID"] == run.run_id
    assert run.environment["PIPELINE_NAME"] == "test-pipeline"


def test_run_cannot_be_restarted():
    run = run_stages([Stage("Build", lambda ctx: None)])

    with pytest.raises(InvalidRunTransition):
        run.start()


def test_history_bounded_by_max_history_runs():
    runner = PipelineRunner("history")
    config = RunConfig(max_history_runs=2)

    async def go():
        for _ in range(3):
            await runner.execute([Stage("Build", lambda ctx: None)], config)

    asyncio.run(go())

    assert [r.build_number for r in runner.history] == [2, 3]


def test_concurrent_triggers_are_queued_in_order():
    runner = PipelineRunner("serial")
    events = []

    def stage(label):
        async def action(ctx):
            events.append(f"start:{label}")
            await asyncio.sleep(0.05)
            events.append(f"end:{label}")
        return [Stage("Build", action)]

    async def go():
        return await asyncio.gather(
            runner.execute(stage("a"), RunConfig()),
            runner.execute(stage("b"), RunConfig()),
            runner.execute(stage("c"), RunConfig()),
        )

    runs = asyncio.run(go())

    assert events == ["start:a", "end:a", "start:b", "end:b", "start:c", "end:c"]
    assert all(r.state == RunState.SUCCEEDED for r in runs)


def test_trigger_rejected_when_queue_full():
    runner = PipelineRunner("bounded")
    config = RunConfig(max_queued_runs=0)

    async def slow(ctx):
        await asyncio.sleep(0.1)

    async def go():
        return await asyncio.gather(
            runner.execute([Stage("Build", slow)], config),
            runner.execute([Stage("Build", slow)], config),
            return_exceptions=True,
        )

    first, second = asyncio.run(go())

    assert first.state == RunState.SUCCEEDED
    assert isinstance(second, ConcurrentRunRejected)


def test_allow_concurrent_overlaps_runs():
    runner = PipelineRunner("parallel")
    events = []

    async def action(ctx):
        events.append("start")
        await asyncio.sleep(0.05)
        events.append("end")

    async def go():
        config = RunConfig(allow_concurrent=True)
        await asyncio.gather(
            runner.execute([Stage("Build", action)], config),
            runner.execute([Stage("Build", action)], config),
        )

    asyncio.run(go())

    assert events == ["start", "start", "end", "end"]


def test_reporter_errors_do_not_change_outcome():
    class BrokenReporter:
        def run_started(self, run):
            raise RuntimeError("db down")

        def stage_started(self, run, stage):
            raise RuntimeError("db down")

        def stage_finished(self, run, result):
            raise RuntimeError("db down")

        def run_finished(self, run):
            raise RuntimeError("db down")

    runner = PipelineRunner("reported", reporters=[BrokenReporter()])
    run = asyncio.run(runner.execute([Stage("Build", lambda ctx: None)]))

    assert run.state == RunState.SUCCEEDED


def test_get_runner_returns_same_instance_per_name():
    assert get_runner("shared-identity") is get_runner("shared-identity")
    assert get_runner("shared-identity") is not get_runner("other-identity")


def test_get_runner_keys_same_name_by_repository():
    first = get_runner("Unnamed Pipeline", key="org/api/Unnamed Pipeline")
    second = get_runner("Unnamed Pipeline", key="org/web/Unnamed Pipeline")

    assert first is not second
    assert first.name == second.name == "Unnamed Pipeline"
    assert get_runner("Unnamed Pipeline", key="org/api/Unnamed Pipeline") is first
