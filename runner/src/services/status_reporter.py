"""
Report run and stage results to external sinks.

Reporters are best-effort: the executor logs and swallows any exception a
reporter raises, so a broken sink never changes a run's outcome.
"""

import logging
import os
import uuid
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, Optional

import httpx
import redis
from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import sessionmaker

from runner.src.config import get_settings
from runner.src.models.db import PipelineRun, PipelineStage
from runner.src.models.stage import Run, Stage, StageResult
from runner.src.services.junit_report import render_junit

logger = logging.getLogger(__name__)
settings = get_settings()

RUN_STATUS = "stageline:status"


def run_summary(run: Run) -> Dict[str, Any]:
    """Structured outcome record shared by all sinks."""
    duration = None
    if run.started_at and run.finished_at:
        duration = round((run.finished_at - run.started_at).total_seconds(), 3)

    return {
        "run_id": run.run_id,
        "pipeline": run.pipeline_name,
        "build_number": run.build_number,
        "state": run.state.value,
        "outcome": run.outcome.value if run.outcome else None,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "duration_seconds": duration,
        "environment": run.environment.snapshot(),
        "artifacts": run.artifacts,
        "hook_errors": run.hook_errors,
        "stages": [stage.model_dump(mode="json") for stage in run.stages],
    }


class RunReporter:
    """Base reporter; override the events you care about."""

    def run_started(self, run: Run):
        pass

    def stage_started(self, run: Run, stage: Stage):
        pass

    def stage_finished(self, run: Run, result: StageResult):
        pass

    def run_finished(self, run: Run):
        pass


class LoggingReporter(RunReporter):
    def run_started(self, run: Run):
        logger.info(f"[{run.pipeline_name} #{run.build_number}] run started")

    def stage_finished(self, run: Run, result: StageResult):
        suffix = f" ({result.skip_reason})" if result.skip_reason else ""
        logger.info(
            f"[{run.pipeline_name} #{run.build_number}] {result.name}: "
            f"{result.outcome.value}{suffix} in {result.duration_seconds}s"
        )

    def run_finished(self, run: Run):
        logger.info(
            f"[{run.pipeline_name} #{run.build_number}] finished: {run.outcome.value}"
        )


@lru_cache()
def get_session_factory() -> sessionmaker:
    engine = create_engine(settings.database_url)
    return sessionmaker(bind=engine)


class DatabaseReporter(RunReporter):
    """
    Persist runs and stages with SQLAlchemy.

    Rows created by the API at trigger time are updated in place; runs
    started elsewhere (e.g. the local CLI) get their rows created here.
    Old runs of the same pipeline beyond `max_history_runs` are pruned.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None, max_history_runs: Optional[int] = None):
        self.session_factory = session_factory
        self.max_history_runs = max_history_runs or settings.max_history_runs

    def _session(self):
        factory = self.session_factory or get_session_factory()
        return factory()

    def _get_run(self, session, run: Run) -> PipelineRun:
        row = session.get(PipelineRun, uuid.UUID(run.run_id))
        if row is None:
            row = PipelineRun(
                id=uuid.UUID(run.run_id),
                pipeline_name=run.pipeline_name,
                build_number=run.build_number,
                commit_sha=run.environment.get("GIT_COMMIT", "")[:40],
                branch=run.environment.get("BRANCH_NAME", ""),
            )
            session.add(row)
        return row

    def _get_stage(self, session, run: Run, name: str, order: int) -> PipelineStage:
        row = session.execute(
            select(PipelineStage)
            .where(PipelineStage.run_id == uuid.UUID(run.run_id))
            .where(PipelineStage.name == name)
        ).scalar_one_or_none()
        if row is None:
            row = PipelineStage(run_id=uuid.UUID(run.run_id), name=name, stage_order=order)
            session.add(row)
        return row

    def run_started(self, run: Run):
        with self._session() as session:
            row = self._get_run(session, run)
            row.status = run.state.value
            row.started_at = run.started_at
            row.updated_at = datetime.utcnow()
            session.commit()
        logger.info(f"Updated run {run.run_id} status to {run.state.value}")

    def stage_started(self, run: Run, stage: Stage):
        with self._session() as session:
            self._get_run(session, run)
            session.flush()
            row = self._get_stage(session, run, stage.name, len(run.stages))
            row.status = "running"
            row.started_at = datetime.utcnow()
            session.commit()

    def stage_finished(self, run: Run, result: StageResult):
        with self._session() as session:
            self._get_run(session, run)
            session.flush()
            row = self._get_stage(session, run, result.name, result.order)
            row.stage_order = result.order
            row.status = result.outcome.value
            row.skip_reason = result.skip_reason
            row.logs = result.output
            row.error = result.error
            row.started_at = result.started_at
            row.finished_at = result.finished_at
            row.duration_seconds = result.duration_seconds
            row.updated_at = datetime.utcnow()
            session.commit()
        logger.debug(f"Updated stage {result.order} of run {run.run_id} to {result.outcome.value}")

    def run_finished(self, run: Run):
        with self._session() as session:
            row = self._get_run(session, run)
            row.status = run.state.value
            row.outcome = run.outcome.value
            row.finished_at = run.finished_at
            row.updated_at = datetime.utcnow()
            session.commit()
            self.prune_history(session, run.pipeline_name, row.repository_id)
        logger.info(f"Updated run {run.run_id} status to {run.state.value}")

    def prune_history(self, session, pipeline_name: str, repository_id: Optional[uuid.UUID] = None):
        """Keep only the newest `max_history_runs` runs of a repository's pipeline."""
        # Runs started outside the API (no repository) form their own history
        if repository_id is None:
            same_repository = PipelineRun.repository_id.is_(None)
        else:
            same_repository = PipelineRun.repository_id == repository_id

        stale = session.execute(
            select(PipelineRun.id)
            .where(PipelineRun.pipeline_name == pipeline_name)
            .where(same_repository)
            .order_by(PipelineRun.created_at.desc(), PipelineRun.build_number.desc())
            .offset(self.max_history_runs)
        ).scalars().all()
        if not stale:
            return

        session.execute(delete(PipelineStage).where(PipelineStage.run_id.in_(stale)))
        session.execute(delete(PipelineRun).where(PipelineRun.id.in_(stale)))
        session.commit()
        logger.info(f"Pruned {len(stale)} old run(s) of '{pipeline_name}'")


class RedisStatusReporter(RunReporter):
    """Publish live run and stage status to Redis hashes."""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client or redis.from_url(settings.redis_url, decode_responses=True)

    def run_started(self, run: Run):
        self.client.hset(RUN_STATUS, run.run_id, run.state.value)

    def stage_started(self, run: Run, stage: Stage):
        self.client.hset(f"{RUN_STATUS}:{run.run_id}", stage.name, "running")

    def stage_finished(self, run: Run, result: StageResult):
        self.client.hset(f"{RUN_STATUS}:{run.run_id}", result.name, result.outcome.value)

    def run_finished(self, run: Run):
        self.client.hset(RUN_STATUS, run.run_id, run.state.value)


class WebhookReporter(RunReporter):
    """POST the run summary to an HTTP endpoint when a run finishes."""

    def __init__(self, url: str, client: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.url = url
        self.client = client
        self.timeout = timeout

    def run_finished(self, run: Run):
        payload = run_summary(run)
        if self.client is not None:
            response = self.client.post(self.url, json=payload, timeout=self.timeout)
        else:
            response = httpx.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        logger.info(f"Posted run {run.run_id} summary to {self.url}")


class JUnitReporter(RunReporter):
    """Write a JUnit XML report per finished run."""

    def __init__(self, report_dir: Optional[str] = None):
        self.report_dir = report_dir or settings.report_dir
        self.last_report: Optional[str] = None

    def report_path(self, run: Run) -> str:
        safe_name = "".join(c if c.isalnum() or c in "-_" else "-" for c in run.pipeline_name)
        return os.path.join(self.report_dir, f"{safe_name}-{run.build_number}.xml")

    def run_finished(self, run: Run):
        os.makedirs(self.report_dir, exist_ok=True)
        path = self.report_path(run)
        with open(path, "w", encoding="utf-8") as f:
            f.write(render_junit(run))
        self.last_report = path
        logger.info(f"Wrote JUnit report {path}")


def default_reporters(max_history_runs: Optional[int] = None):
    """Reporters used by the worker, driven by settings."""
    reporters = [
        LoggingReporter(),
        DatabaseReporter(max_history_runs=max_history_runs),
        RedisStatusReporter(),
        JUnitReporter(),
    ]
    if settings.report_webhook_url:
        reporters.append(WebhookReporter(settings.report_webhook_url))
    return reporters
