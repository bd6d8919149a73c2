from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from uuid import UUID

class StageResponse(BaseModel):
    id: UUID
    name: str
    stage_order: int
    status: str
    skip_reason: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    class Config:
        from_attributes = True

class StageLogResponse(StageResponse):
    logs: Optional[str] = None

class PipelineRunBase(BaseModel):
    commit_sha: str
    branch: str

class PipelineRunResponse(PipelineRunBase):
    id: UUID
    pipeline_name: str
    build_number: int
    status: str
    outcome: Optional[str] = None
    triggered_by: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    stages: List[StageResponse] = []

    class Config:
        from_attributes = True

class RepositoryResponse(BaseModel):
    id: UUID
    name: str
    full_name: str
    clone_url: str
    created_at: datetime

    class Config:
        from_attributes = True
