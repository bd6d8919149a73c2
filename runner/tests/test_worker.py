"""Tests for queued job execution."""

import asyncio
import uuid

from runner.src.models import RunState
from runner.src.services import executor
from runner.src.worker import execute_job, pipeline_key


def job(repo, build_number):
    return {
        "run_id": str(uuid.uuid4()),
        "config": {"name": "shared-name", "stages": [{"name": "Build", "steps": ["echo build"]}]},
        "repo_info": {"repo_full_name": repo, "branch": "main", "commit_sha": "abc123"},
        "build_number": build_number,
    }


def test_pipeline_key():
    assert pipeline_key("svc", {"repo_full_name": "org/api"}) == "org/api/svc"
    assert pipeline_key("svc", {}) == "svc"


def test_same_pipeline_name_in_two_repositories_gets_two_runners():
    first = asyncio.run(execute_job(job("org/api", 1), reporters=[]))
    second = asyncio.run(execute_job(job("org/web", 1), reporters=[]))

    assert first.state == RunState.SUCCEEDED
    assert second.state == RunState.SUCCEEDED

    api_runner = executor._runners["org/api/shared-name"]
    web_runner = executor._runners["org/web/shared-name"]
    assert api_runner is not web_runner
    assert [run.run_id for run in api_runner.history] == [first.run_id]
    assert [run.run_id for run in web_runner.history] == [second.run_id]
