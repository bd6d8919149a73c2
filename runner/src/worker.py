"""
Queue worker - pulls pipeline jobs from Redis and executes them one at a time.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import redis
import json
from typing import Optional, Dict, Any

from runner.src.config import get_settings
from runner.src.models.stage import Run
from runner.src.models.step import PipelineJob
from runner.src.services.commands import get_command_runner
from runner.src.services.executor import get_runner
from runner.src.services.pipeline_builder import (
    build_environment,
    build_post_hooks,
    build_stages,
)
from runner.src.services.status_reporter import default_reporters

logger = logging.getLogger(__name__)
settings = get_settings()

PIPELINE_QUEUE = "stageline:jobs"

async def get_next_job() -> Optional[Dict[str, Any]]:
    """Pull next job from Redis queue."""
    client = redis.from_url(settings.redis_url, decode_responses=True)

    try:
        result = await asyncio.to_thread(client.brpop, PIPELINE_QUEUE, timeout=5)
        if result:
            _, job_data = result
            return json.loads(job_data)
        return None
    finally:
        client.close()

def pipeline_key(name: str, repo_info: Dict[str, Any]) -> str:
    """Runner identity: repository plus pipeline name."""
    repo = repo_info.get("repo_full_name")
    return f"{repo}/{name}" if repo else name

async def execute_job(job_data: Dict[str, Any], reporters=None) -> Run:
    """Build stages for a queued job and execute them in a fresh workspace."""
    job = PipelineJob.model_validate(job_data)
    config = job.config

    workspace = tempfile.mkdtemp(prefix="stageline_", dir=settings.workspace_root or None)
    try:
        env = build_environment(config, job.repo_info, job.build_number, workspace)
        command_runner = get_command_runner(job.run_id)

        if reporters is None:
            reporters = default_reporters(config.options.max_history_runs)
        runner = get_runner(config.name, reporters=reporters, key=pipeline_key(config.name, job.repo_info))

        return await runner.execute(
            build_stages(config, job.repo_info),
            config.options.to_run_config(hook_timeout=settings.hook_timeout),
            environment=env,
            post=build_post_hooks(config, command_runner),
            run_id=job.run_id,
            build_number=job.build_number,
            command_runner=command_runner,
        )
    finally:
        if os.path.isdir(workspace):
            shutil.rmtree(workspace, ignore_errors=True)

async def worker_loop():
    """Main worker loop."""
    logger.info("Worker started, waiting for jobs...")

    while True:
        try:
            job = await get_next_job()

            if job:
                run_id = job.get("run_id", "unknown")
                logger.info(f"Received job for run {run_id}")

                try:
                    run = await execute_job(job)
                    logger.info(f"Run {run_id} finished: {run.state.value}")
                except Exception as e:
                    logger.exception(f"Failed to execute pipeline {run_id}: {e}")

        except KeyboardInterrupt:
            logger.info("Worker shutting down...")
            break
        except Exception as e:
            logger.exception(f"Worker error: {e}")
            await asyncio.sleep(5)

def run_worker():
    """Entry point for worker."""
    asyncio.run(worker_loop())
