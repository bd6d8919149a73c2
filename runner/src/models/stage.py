"""
Stage, run and result models.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from runner.src.errors import InvalidRunTransition, StageActionFailure, TimeoutExceeded
from runner.src.models.environment import Environment
from runner.src.models.outcome import Outcome, PostCondition, RunState

# action(ctx) -> Outcome | None, sync or async
StageAction = Callable[["StageContext"], Any]
# gate(env) -> bool
StageGate = Callable[[Environment], bool]
# stage hook(ctx, result); run hook(run)
StageHook = Callable[["StageContext", "StageResult"], Any]
RunHook = Callable[["Run"], Any]


@dataclass(frozen=True)
class Stage:
    """One named unit of pipeline work. Immutable once defined."""
    name: str
    action: StageAction
    gate: Optional[StageGate] = None
    post: Mapping[PostCondition, StageHook] = field(default_factory=dict)
    description: str = ""


class RunConfig(BaseModel):
    timeout_seconds: float = Field(3600, gt=0)
    max_history_runs: int = Field(10, ge=1)
    allow_concurrent: bool = False
    max_queued_runs: Optional[int] = Field(None, ge=0)
    hook_timeout_seconds: float = Field(60, gt=0)


class StageResult(BaseModel):
    name: str
    order: int
    outcome: Outcome
    skip_reason: Optional[str] = None  # gate | halted | timeout
    output: str = ""
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0


_TRANSITIONS = {
    RunState.PENDING: {RunState.RUNNING},
    RunState.RUNNING: {
        RunState.SUCCEEDED,
        RunState.FAILED,
        RunState.UNSTABLE,
        RunState.ABORTED,
    },
}


class Run(BaseModel):
    """One execution of the full stage sequence."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    pipeline_name: str
    build_number: int = 1
    state: RunState = RunState.PENDING
    outcome: Optional[Outcome] = None
    environment: Environment = Field(default_factory=Environment)
    stages: List[StageResult] = []
    artifacts: Dict[str, List[str]] = {}
    hook_errors: List[str] = []
    timeout_seconds: float = 3600
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    deadline: Optional[datetime] = None

    class Config:
        arbitrary_types_allowed = True

    def _transition(self, new_state: RunState):
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise InvalidRunTransition(
                f"Run {self.run_id}: cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state

    def start(self):
        self._transition(RunState.RUNNING)
        self.started_at = datetime.utcnow()
        self.deadline = self.started_at + timedelta(seconds=self.timeout_seconds)

    def finish(self, outcome: Outcome):
        self._transition(RunState.from_outcome(outcome))
        self.outcome = outcome
        self.finished_at = datetime.utcnow()

    def stage(self, name: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.name == name:
                return result
        return None

    @property
    def outcomes(self) -> List[Outcome]:
        return [result.outcome for result in self.stages]


class StageContext:
    """
    Handle passed to a stage's action and hooks.

    Gives access to the shared environment, captured output, artifacts
    published by earlier stages and the command runner.
    """

    def __init__(self, run: Run, stage: Stage, command_runner=None):
        self.run = run
        self.stage = stage
        self.command_runner = command_runner
        self.cancelled = threading.Event()
        self.unstable = False
        self._output: List[str] = []

    @property
    def env(self) -> Environment:
        return self.run.environment

    @property
    def output(self) -> str:
        return "\n".join(self._output)

    def log(self, text: str):
        if text:
            self._output.append(text.rstrip("\n"))

    def mark_unstable(self, reason: str = ""):
        self.unstable = True
        if reason:
            self.log(f"[unstable] {reason}")

    def check_cancelled(self):
        """Raise TimeoutExceeded once the run deadline has passed."""
        if self.cancelled.is_set():
            raise TimeoutExceeded(f"Stage '{self.stage.name}' cancelled by pipeline timeout")

    def for_hooks(self) -> "StageContext":
        """
        Context for post hooks: same run, stage and captured output, but
        with a fresh `cancelled` flag so cleanup still runs after a timeout.
        """
        hook_ctx = StageContext(self.run, self.stage, self.command_runner)
        hook_ctx.unstable = self.unstable
        hook_ctx._output = self._output
        return hook_ctx

    def publish_artifacts(self, paths: List[str]):
        self.run.artifacts.setdefault(self.stage.name, []).extend(paths)

    def artifacts(self, stage_name: Optional[str] = None) -> List[str]:
        if stage_name is not None:
            return list(self.run.artifacts.get(stage_name, []))
        return [path for paths in self.run.artifacts.values() for path in paths]

    async def sh(
        self,
        command: str,
        allow_failure: bool = False,
        unstable: bool = False,
        capture: Optional[str] = None,
        image: Optional[str] = None,
    ):
        """
        Run an external command through the configured command runner.

        A non-zero exit fails the stage unless `allow_failure` (log and
        continue) or `unstable` (mark the stage unstable) is set. With
        `capture`, stripped stdout is stored in the environment.
        """
        if self.command_runner is None:
            raise StageActionFailure("No command runner configured")
        self.check_cancelled()

        result = await self.command_runner.run(
            command,
            env={**self.env.snapshot(), "STAGE_NAME": self.stage.name},
            cwd=self.env.get("WORKSPACE"),
            image=image,
        )

        self.log(f"$ {command}")
        self.log(result.stdout)
        self.log(result.stderr)

        if not result.ok:
            message = f"'{command}' exited with code {result.exit_code}"
            if allow_failure:
                self.log(f"[ignored] {message}")
                return result
            if unstable:
                self.mark_unstable(message)
                return result
            raise StageActionFailure(message, exit_code=result.exit_code)

        if capture:
            self.env.recompute(capture, result.stdout.strip())

        return result
