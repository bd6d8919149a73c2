from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from typing import List, Optional
from uuid import UUID

from api.src.db.database import get_db
from api.src.models.pipeline import PipelineRun, PipelineStage, Repository
from api.src.models.run import PipelineRunResponse, RepositoryResponse, StageLogResponse
from api.src.services.queue import get_run_status, get_stage_statuses
from runner.src.models.outcome import Outcome
from runner.src.services.junit_report import render_junit_suite

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

TERMINAL_STATUSES = ("succeeded", "failed", "unstable", "aborted")
STAGE_OUTCOMES = {o.value for o in Outcome}

async def load_run(db: AsyncSession, run_id: UUID) -> PipelineRun:
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.stages))
        .where(PipelineRun.id == run_id)
    )
    result = await db.execute(query)
    run = result.scalar_one_or_none()

    if not run:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

    return run

@router.get("/runs", response_model=List[PipelineRunResponse])
async def list_runs(
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
    branch: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """List pipeline runs, newest first."""
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.stages))
        .order_by(PipelineRun.created_at.desc())
    )

    if status:
        query = query.where(PipelineRun.status == status)
    if branch:
        query = query.where(PipelineRun.branch == branch)

    query = query.limit(limit).offset(offset)

    result = await db.execute(query)
    return result.scalars().all()

@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get a specific pipeline run with its stage outcomes."""
    return await load_run(db, run_id)

@router.get("/runs/{run_id}/status")
async def get_run_status_endpoint(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get real-time status of a pipeline run."""
    run = await load_run(db, run_id)

    live_status = await get_run_status(str(run_id))
    live_stages = await get_stage_statuses(str(run_id))

    return {
        "run_id": str(run_id),
        "db_status": run.status,
        "live_status": live_status,
        "outcome": run.outcome,
        "stages": [
            {
                "name": stage.name,
                "status": live_stages.get(stage.name, stage.status),
                "order": stage.stage_order,
                "skip_reason": stage.skip_reason,
            }
            for stage in sorted(run.stages, key=lambda s: s.stage_order)
        ]
    }

@router.get("/runs/{run_id}/logs", response_model=List[StageLogResponse])
async def get_run_logs(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get captured output for all stages in a pipeline run."""
    query = (
        select(PipelineStage)
        .where(PipelineStage.run_id == run_id)
        .order_by(PipelineStage.stage_order)
    )
    result = await db.execute(query)
    stages = result.scalars().all()

    if not stages:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

    return stages

@router.get("/runs/{run_id}/junit")
async def get_run_junit(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """JUnit XML report of a finished run, one testcase per stage."""
    run = await load_run(db, run_id)

    if run.status not in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail=f"Run is still {run.status}")

    xml = render_junit_suite(
        suite_name=run.pipeline_name,
        classname=f"{run.pipeline_name}.{run.build_number}",
        stages=[
            {
                "name": stage.name,
                # Stages left pending by a lost worker are reported as aborted
                "outcome": stage.status if stage.status in STAGE_OUTCOMES else Outcome.ABORTED.value,
                "duration_seconds": stage.duration_seconds,
                "output": stage.logs,
                "error": stage.error,
                "skip_reason": stage.skip_reason,
            }
            for stage in sorted(run.stages, key=lambda s: s.stage_order)
        ],
        properties={
            "run_id": str(run.id),
            "build_number": str(run.build_number),
            "outcome": run.outcome or "",
        },
        timestamp=run.started_at.isoformat() if run.started_at else None,
    )
    return Response(content=xml, media_type="application/xml")

@router.get("/repositories", response_model=List[RepositoryResponse])
async def list_repositories(db: AsyncSession = Depends(get_db)):
    """List all registered repositories."""
    query = select(Repository).order_by(Repository.created_at.desc())
    result = await db.execute(query)
    return result.scalars().all()

@router.get("/stats")
async def get_pipeline_stats(db: AsyncSession = Depends(get_db)):
    """Run counts by status and outcome."""
    result = await db.execute(
        select(PipelineRun.status, func.count(PipelineRun.id))
        .group_by(PipelineRun.status)
    )
    status_counts = {row[0]: row[1] for row in result.all()}

    result = await db.execute(
        select(PipelineRun.outcome, func.count(PipelineRun.id))
        .where(PipelineRun.outcome.is_not(None))
        .group_by(PipelineRun.outcome)
    )
    outcome_counts = {row[0]: row[1] for row in result.all()}

    result = await db.execute(select(func.count(Repository.id)))
    repo_count = result.scalar()

    return {
        "repositories": repo_count,
        "runs": status_counts,
        "outcomes": outcome_counts,
        "total_runs": sum(status_counts.values()),
    }
