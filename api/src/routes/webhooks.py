"""
GitHub webhook endpoints.
"""

from fnmatch import fnmatchcase
from fastapi import APIRouter, Request, HTTPException, Header, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from typing import Optional
import logging

from api.src.config import get_settings
from api.src.db.database import get_db
from api.src.models.pipeline import Repository, PipelineRun, PipelineStage
from api.src.services.github import (
    verify_signature,
    parse_webhook_payload,
    clone_repository,
    fetch_pipeline_config,
    cleanup_repo,
)
from api.src.services.pipeline_parser import parse_pipeline_dict, PipelineConfigError
from api.src.services.queue import enqueue_pipeline_run

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Implicit first stage added by the runner when a clone URL is present
CHECKOUT_STAGE = "Checkout"

def branch_triggers(branch: str) -> bool:
    """Whether pushes to `branch` trigger runs under `trigger_branches`."""
    patterns = settings.trigger_branch_patterns
    if not patterns:
        return True
    return any(fnmatchcase(branch, pattern) for pattern in patterns)

async def next_build_number(db: AsyncSession, repository_id) -> int:
    result = await db.execute(
        select(func.max(PipelineRun.build_number))
        .where(PipelineRun.repository_id == repository_id)
    )
    return (result.scalar() or 0) + 1

async def process_push_event(
    payload: dict,
    db: AsyncSession,
):
    """Process GitHub push event and create pipeline run."""
    webhook_data = parse_webhook_payload(payload)

    if not webhook_data["commit_sha"]:
        logger.warning("No commit SHA in webhook payload")
        return {"status": "skipped", "reason": "No commit SHA"}

    if webhook_data["deleted"]:
        return {"status": "skipped", "reason": "Branch deleted"}

    if not webhook_data["is_branch"]:
        return {"status": "skipped", "reason": f"Ref {webhook_data['branch']} is not a branch"}

    if not branch_triggers(webhook_data["branch"]):
        return {"status": "skipped", "reason": f"Branch {webhook_data['branch']} not configured"}

    repo_query = select(Repository).where(
        Repository.full_name == webhook_data["repo_full_name"]
    )
    result = await db.execute(repo_query)
    repository = result.scalar_one_or_none()

    if not repository:
        repository = Repository(
            name=webhook_data["repo_name"],
            full_name=webhook_data["repo_full_name"],
            clone_url=webhook_data["clone_url"],
        )
        db.add(repository)
        await db.flush()

    # Clone repo and fetch pipeline config
    repo_path = None
    try:
        repo_path = await clone_repository(
            webhook_data["clone_url"],
            webhook_data["commit_sha"]
        )

        pipeline_config = await fetch_pipeline_config(repo_path)

        if not pipeline_config:
            logger.info(f"No pipeline config found in {webhook_data['repo_full_name']}")
            return {"status": "skipped", "reason": "No pipeline configuration found"}

        validated_config = parse_pipeline_dict(pipeline_config)

    except PipelineConfigError as e:
        logger.error(f"Invalid pipeline config: {e}")
        return {"status": "error", "reason": str(e)}
    except Exception as e:
        logger.error(f"Failed to process repository: {e}")
        return {"status": "error", "reason": str(e)}
    finally:
        if repo_path:
            cleanup_repo(repo_path)

    build_number = await next_build_number(db, repository.id)

    pipeline_run = PipelineRun(
        repository_id=repository.id,
        pipeline_name=validated_config["name"],
        build_number=build_number,
        commit_sha=webhook_data["commit_sha"],
        branch=webhook_data["branch"],
        status="queued",
        triggered_by=webhook_data["pusher"],
        config=validated_config,
    )
    db.add(pipeline_run)
    await db.flush()

    stage_names = [CHECKOUT_STAGE] if webhook_data["clone_url"] else []
    stage_names += [stage["name"] for stage in validated_config["stages"]]
    for i, name in enumerate(stage_names):
        db.add(PipelineStage(
            run_id=pipeline_run.id,
            name=name,
            status="pending",
            stage_order=i,
        ))

    await db.commit()

    await enqueue_pipeline_run(
        run_id=str(pipeline_run.id),
        config=validated_config,
        repo_info=webhook_data,
        build_number=build_number,
    )

    logger.info(f"Pipeline run {pipeline_run.id} (#{build_number}) created and queued")

    return {
        "status": "queued",
        "run_id": str(pipeline_run.id),
        "build_number": build_number,
        "stages": len(stage_names),
    }

@router.post("/github")
async def github_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    Receive GitHub webhook events.
    """
    body = await request.body()

    if settings.github_webhook_secret and not verify_signature(body, x_hub_signature_256):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if x_github_event == "ping":
        return {"status": "pong", "message": "Webhook configured successfully"}

    if x_github_event == "push":
        return await process_push_event(payload, db)

    return {
        "status": "ignored",
        "event": x_github_event,
        "message": f"Event type '{x_github_event}' not handled"
    }
