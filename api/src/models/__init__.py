from api.src.models.pipeline import Repository, PipelineRun, PipelineStage
from api.src.models.run import (
    PipelineRunResponse,
    StageResponse,
    StageLogResponse,
    RepositoryResponse
)

__all__ = [
    "Repository",
    "PipelineRun",
    "PipelineStage",
    "PipelineRunResponse",
    "StageResponse",
    "StageLogResponse",
    "RepositoryResponse"
]
