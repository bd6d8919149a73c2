"""
Database models for the runner (sync version).
"""

from sqlalchemy import Column, String, DateTime, Float, ForeignKey, Integer, Text, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid

Base = declarative_base()

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    repository_id = Column(Uuid(as_uuid=True))
    pipeline_name = Column(String(255), nullable=False, default="Unnamed Pipeline")
    build_number = Column(Integer, nullable=False, default=1)
    commit_sha = Column(String(40), nullable=False, default="")
    branch = Column(String(255), nullable=False, default="")
    status = Column(String(50), default="pending")
    outcome = Column(String(50))
    triggered_by = Column(String(255))
    config = Column(JSON().with_variant(JSONB(), "postgresql"))
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class PipelineStage(Base):
    __tablename__ = "pipeline_stages"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid(as_uuid=True), ForeignKey("pipeline_runs.id", ondelete="CASCADE"))
    name = Column(String(255), nullable=False)
    stage_order = Column(Integer, nullable=False)
    status = Column(String(50), default="pending")
    skip_reason = Column(String(50))
    logs = Column(Text)
    error = Column(Text)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    duration_seconds = Column(Float)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
