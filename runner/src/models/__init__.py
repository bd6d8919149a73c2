from runner.src.models.outcome import (
    Outcome,
    RunState,
    PostCondition,
    worst_outcome,
)
from runner.src.models.environment import Environment
from runner.src.models.stage import (
    Stage,
    StageContext,
    StageResult,
    Run,
    RunConfig,
)
from runner.src.models.step import (
    StepConfig,
    StageConfig,
    PipelineOptions,
    PipelineConfig,
    PipelineJob,
)

__all__ = [
    "Outcome",
    "RunState",
    "PostCondition",
    "worst_outcome",
    "Environment",
    "Stage",
    "StageContext",
    "StageResult",
    "Run",
    "RunConfig",
    "StepConfig",
    "StageConfig",
    "PipelineOptions",
    "PipelineConfig",
    "PipelineJob",
]
