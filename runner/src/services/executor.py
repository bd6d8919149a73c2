"""
Pipeline executor - runs stages in order with gates, post hooks and a
pipeline-wide deadline.
"""

import asyncio
import inspect
import logging
import time
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Mapping, Optional, Sequence, Tuple

from runner.src.errors import HookFailure, PipelineDefinitionError
from runner.src.models.environment import Environment
from runner.src.models.outcome import Outcome, PostCondition, worst_outcome
from runner.src.models.stage import (
    Run,
    RunConfig,
    RunHook,
    Stage,
    StageContext,
    StageResult,
)
from runner.src.services.run_lock import RunLock

logger = logging.getLogger(__name__)

_ACTION_OUTCOMES = (Outcome.SUCCESS, Outcome.UNSTABLE, Outcome.FAILURE, Outcome.ABORTED)

# Grace period for a cancelled action to unwind (e.g. kill its subprocess)
CANCEL_GRACE_SECONDS = 5


async def _invoke(fn: Callable, *args) -> Any:
    """Call a sync or async callable. Sync callables run in a worker thread."""
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(result):
        return await result
    return result


def validate_stages(stages: Sequence[Stage]):
    if not stages:
        raise PipelineDefinitionError("Pipeline must have at least one stage")

    seen = set()
    for stage in stages:
        if stage.name in seen:
            raise PipelineDefinitionError(f"Duplicate stage name '{stage.name}'")
        seen.add(stage.name)


class PipelineRunner:
    """
    Executes stage sequences for one pipeline identity.

    Runs are serialized through a FIFO RunLock unless the run config sets
    `allow_concurrent`. Stages of a run always execute strictly one after
    the other.
    """

    def __init__(self, name: str, reporters: Sequence = (), command_runner=None):
        self.name = name
        self.reporters = list(reporters)
        self.command_runner = command_runner
        self.history: Deque[Run] = deque(maxlen=10)
        self._lock = RunLock()
        self._build_counter = 0

    async def execute(
        self,
        stages: Sequence[Stage],
        config: Optional[RunConfig] = None,
        environment: Optional[Mapping[str, str]] = None,
        post: Optional[Mapping[PostCondition, RunHook]] = None,
        run_id: Optional[str] = None,
        build_number: Optional[int] = None,
        command_runner=None,
    ) -> Run:
        """Execute `stages` and return the finished Run."""
        config = config or RunConfig()
        validate_stages(stages)

        if config.allow_concurrent:
            return await self._execute(
                stages, config, environment, post, run_id, build_number, command_runner
            )

        self._lock.max_queued = config.max_queued_runs
        async with self._lock:
            return await self._execute(
                stages, config, environment, post, run_id, build_number, command_runner
            )

    def _next_build_number(self, build_number: Optional[int]) -> int:
        if build_number is None:
            self._build_counter += 1
            return self._build_counter
        self._build_counter = max(self._build_counter, build_number)
        return build_number

    async def _execute(
        self,
        stages: Sequence[Stage],
        config: RunConfig,
        environment,
        post,
        run_id,
        build_number,
        command_runner,
    ) -> Run:
        if isinstance(environment, Environment):
            env = environment
        else:
            env = Environment(environment)

        fields = {"run_id": run_id} if run_id else {}
        run = Run(
            pipeline_name=self.name,
            build_number=self._next_build_number(build_number),
            environment=env,
            timeout_seconds=config.timeout_seconds,
            **fields,
        )
        env.setdefault("PIPELINE_NAME", self.name)
        env.setdefault("RUN_ID", run.run_id)
        env.setdefault("BUILD_NUMBER", str(run.build_number))

        command_runner = command_runner or self.command_runner

        run.start()
        deadline = time.monotonic() + config.timeout_seconds
        logger.info(
            f"Starting run {run.run_id} of '{self.name}' #{run.build_number} "
            f"with {len(stages)} stages"
        )
        self._notify("run_started", run)

        halted: Optional[str] = None
        for order, stage in enumerate(stages):
            if halted:
                result = StageResult(
                    name=stage.name,
                    order=order,
                    outcome=Outcome.SKIPPED,
                    skip_reason=halted,
                )
                run.stages.append(result)
                self._notify("stage_finished", run, result)
                continue

            result = await self._run_stage(run, stage, order, deadline, config, command_runner)

            if result.outcome == Outcome.ABORTED:
                halted = "timeout"
            elif result.outcome == Outcome.FAILURE:
                halted = "halted"

        outcome = worst_outcome(run.outcomes)
        run.finish(outcome)
        logger.info(f"Run {run.run_id} finished with outcome: {outcome.value}")

        if post:
            await self._run_hooks(post, outcome, config, f"run {run.run_id}", run, run)

        if self.history.maxlen != config.max_history_runs:
            self.history = deque(self.history, maxlen=config.max_history_runs)
        self.history.append(run)

        self._notify("run_finished", run)
        return run

    async def _run_stage(
        self,
        run: Run,
        stage: Stage,
        order: int,
        deadline: float,
        config: RunConfig,
        command_runner,
    ) -> StageResult:
        ctx = StageContext(run, stage, command_runner)
        started_at = datetime.utcnow()
        start = time.monotonic()
        error = None

        if start >= deadline:
            outcome = Outcome.ABORTED
            error = f"Pipeline timeout of {config.timeout_seconds}s exceeded before stage started"
            logger.error(f"Stage {order} ({stage.name}) aborted: {error}")
        else:
            try:
                should_run = True if stage.gate is None else bool(stage.gate(run.environment))
            except Exception as e:
                should_run = None
                outcome = Outcome.FAILURE
                error = f"Gate evaluation failed: {e}"
                logger.error(f"Stage {order} ({stage.name}): {error}")

            if should_run is False:
                logger.info(f"Stage {order} ({stage.name}) skipped by gate")
                result = StageResult(
                    name=stage.name,
                    order=order,
                    outcome=Outcome.SKIPPED,
                    skip_reason="gate",
                )
                run.stages.append(result)
                self._notify("stage_finished", run, result)
                return result

            if should_run:
                logger.info(f"Executing stage {order}: {stage.name}")
                self._notify("stage_started", run, stage)
                outcome, error = await self._run_action(stage, ctx, deadline, config)

        result = StageResult(
            name=stage.name,
            order=order,
            outcome=outcome,
            output=ctx.output,
            error=error,
            started_at=started_at,
            finished_at=datetime.utcnow(),
            duration_seconds=round(time.monotonic() - start, 3),
        )
        run.stages.append(result)

        if outcome in (Outcome.FAILURE, Outcome.ABORTED):
            logger.error(f"Stage {order} ({stage.name}) {outcome.value}: {error}")
        else:
            logger.info(f"Stage {order} ({stage.name}) {outcome.value}")

        if stage.post:
            await self._run_hooks(stage.post, outcome, config, f"stage '{stage.name}'", run, ctx.for_hooks(), result)

        self._notify("stage_finished", run, result)
        return result

    async def _run_action(
        self,
        stage: Stage,
        ctx: StageContext,
        deadline: float,
        config: RunConfig,
    ) -> Tuple[Outcome, Optional[str]]:
        task = asyncio.ensure_future(_invoke(stage.action, ctx))
        done, _ = await asyncio.wait({task}, timeout=max(deadline - time.monotonic(), 0))

        if not done:
            # Cooperative cancellation; sync actions in threads only see ctx.cancelled
            ctx.cancelled.set()
            task.cancel()
            await asyncio.wait({task}, timeout=CANCEL_GRACE_SECONDS)
            if not task.done():
                logger.warning(f"Stage '{stage.name}' did not stop after cancellation")
            else:
                # Retrieve the result so it is never reported as unhandled
                try:
                    task.exception()
                except asyncio.CancelledError:
                    pass
            return Outcome.ABORTED, f"Pipeline timeout of {config.timeout_seconds}s exceeded"

        timed_out = time.monotonic() >= deadline

        if task.cancelled():
            return Outcome.ABORTED, "Stage action was cancelled"

        exc = task.exception()
        if exc is not None:
            if timed_out:
                return Outcome.ABORTED, f"Pipeline timeout of {config.timeout_seconds}s exceeded"
            return Outcome.FAILURE, str(exc) or type(exc).__name__

        if timed_out:
            return Outcome.ABORTED, f"Pipeline timeout of {config.timeout_seconds}s exceeded"

        returned = task.result()
        if returned is None:
            return (Outcome.UNSTABLE if ctx.unstable else Outcome.SUCCESS), None

        if isinstance(returned, Outcome) and returned in _ACTION_OUTCOMES:
            if returned == Outcome.SUCCESS and ctx.unstable:
                return Outcome.UNSTABLE, None
            return returned, None

        return Outcome.FAILURE, f"Stage action returned invalid outcome {returned!r}"

    async def _run_hooks(
        self,
        hooks: Mapping[PostCondition, Callable],
        outcome: Outcome,
        config: RunConfig,
        label: str,
        run: Run,
        *args,
    ):
        """Run hooks for `outcome`, then `always`. Failures are logged only."""
        for condition in (PostCondition.for_outcome(outcome), PostCondition.ALWAYS):
            hook = hooks.get(condition)
            if hook is None:
                continue
            try:
                await self._call_hook(hook, config, label, condition, *args)
            except Exception as e:
                message = f"{label} {condition.value} hook failed: {e}"
                logger.warning(message)
                run.hook_errors.append(message)

    async def _call_hook(self, hook: Callable, config: RunConfig, label: str, condition, *args):
        try:
            await asyncio.wait_for(_invoke(hook, *args), timeout=config.hook_timeout_seconds)
        except asyncio.TimeoutError:
            raise HookFailure(
                f"timed out after {config.hook_timeout_seconds}s"
            )

    def _notify(self, event: str, *args):
        for reporter in self.reporters:
            try:
                getattr(reporter, event)(*args)
            except Exception as e:
                logger.warning(f"Reporter {type(reporter).__name__}.{event} failed: {e}")


_runners: Dict[str, PipelineRunner] = {}


def get_runner(
    name: str,
    reporters: Optional[Sequence] = None,
    command_runner=None,
    key: Optional[str] = None,
) -> PipelineRunner:
    """
    Get the runner for a pipeline identity, creating it on first use.

    The identity is `key` when given (e.g. repository plus pipeline name),
    otherwise the pipeline name. Every caller in the process shares the same
    runner (and run lock, build counter and history) for a given identity.
    """
    identity = key or name
    runner = _runners.get(identity)
    if runner is None:
        runner = PipelineRunner(name, reporters or (), command_runner)
        _runners[identity] = runner
    elif reporters is not None:
        runner.reporters = list(reporters)
    return runner


def run_pipeline(
    name: str,
    stages: Sequence[Stage],
    config: Optional[RunConfig] = None,
    **kwargs,
) -> Run:
    """Synchronous wrapper around PipelineRunner.execute()."""
    runner = get_runner(name)
    return asyncio.run(runner.execute(stages, config, **kwargs))
