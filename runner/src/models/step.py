"""
Pipeline definition models (worker side).
"""

from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Dict, Any

from runner.src.config import get_settings
from runner.src.models.stage import RunConfig

class StepConfig(BaseModel):
    command: str
    allow_failure: bool = False
    unstable: bool = False
    capture: Optional[str] = None

def _coerce_steps(value):
    return [{"command": step} if isinstance(step, str) else step for step in value or []]

class StageConfig(BaseModel):
    name: str
    steps: List[StepConfig]
    image: Optional[str] = None
    when: Dict[str, Any] = {}
    artifacts: List[str] = []
    post: Dict[str, List[StepConfig]] = {}

    @field_validator("steps", mode="before")
    @classmethod
    def coerce_steps(cls, value):
        return _coerce_steps(value)

    @field_validator("post", mode="before")
    @classmethod
    def coerce_post(cls, value):
        return {condition: _coerce_steps(steps) for condition, steps in (value or {}).items()}

class PipelineOptions(BaseModel):
    """Per-pipeline run policy; unset fields fall back to runner settings."""
    timeout: Optional[int] = Field(None, gt=0)
    max_history_runs: Optional[int] = Field(None, ge=1)
    allow_concurrent: Optional[bool] = None
    max_queued_runs: Optional[int] = Field(None, ge=0)

    def to_run_config(self, hook_timeout: Optional[float] = None) -> RunConfig:
        settings = get_settings()
        return RunConfig(
            timeout_seconds=self.timeout or settings.pipeline_timeout,
            max_history_runs=self.max_history_runs or settings.max_history_runs,
            allow_concurrent=(
                settings.allow_concurrent if self.allow_concurrent is None else self.allow_concurrent
            ),
            max_queued_runs=(
                settings.max_queued_runs if self.max_queued_runs is None else self.max_queued_runs
            ),
            hook_timeout_seconds=hook_timeout or settings.hook_timeout,
        )

class PipelineConfig(BaseModel):
    name: str = "Unnamed Pipeline"
    image: Optional[str] = None
    options: PipelineOptions = Field(default_factory=PipelineOptions)
    environment: Dict[str, str] = {}
    stages: List[StageConfig]
    post: Dict[str, List[StepConfig]] = {}

    @field_validator("post", mode="before")
    @classmethod
    def coerce_post(cls, value):
        return {condition: _coerce_steps(steps) for condition, steps in (value or {}).items()}

    @field_validator("environment", mode="before")
    @classmethod
    def stringify_environment(cls, value):
        return {str(k): str(v) for k, v in (value or {}).items()}

class PipelineJob(BaseModel):
    run_id: str
    config: PipelineConfig
    repo_info: Dict[str, Any] = {}
    build_number: Optional[int] = None
    queued_at: Optional[str] = None
