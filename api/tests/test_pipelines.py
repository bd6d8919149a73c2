"""Tests for pipeline run endpoints."""

import uuid
import xml.etree.ElementTree as ET
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from api.src.db.database import get_db
from api.src.main import app

def fake_run(status="failed", outcome="failure"):
    def stage(order, name, status, skip_reason=None, error=None):
        return SimpleNamespace(
            name=name,
            stage_order=order,
            status=status,
            duration_seconds=1.5,
            logs=f"$ {name.lower()}",
            error=error,
            skip_reason=skip_reason,
        )

    return SimpleNamespace(
        id=uuid.uuid4(),
        pipeline_name="java-service",
        build_number=8,
        status=status,
        outcome=outcome,
        started_at=datetime(2026, 1, 5, 12, 0, 0),
        stages=[
            stage(2, "Deploy", "skipped", skip_reason="halted"),
            stage(0, "Checkout", "success"),
            stage(1, "Build", "failure", error="'mvn -B package' exited with code 1"),
        ],
    )

@pytest.fixture
def client():
    async def override_get_db():
        yield None

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()

def test_root(client):
    assert client.get("/").json()["name"] == "Stageline"

def test_junit_report(client):
    run = fake_run()
    with patch("api.src.routes.pipelines.load_run", AsyncMock(return_value=run)):
        response = client.get(f"/api/pipelines/runs/{run.id}/junit")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")

    suite = ET.fromstring(response.content)
    assert [c.get("name") for c in suite.findall("testcase")] == ["Checkout", "Build", "Deploy"]
    assert suite.get("failures") == "1"
    assert suite.get("skipped") == "1"

def test_junit_report_requires_finished_run(client):
    run = fake_run(status="running", outcome=None)
    with patch("api.src.routes.pipelines.load_run", AsyncMock(return_value=run)):
        response = client.get(f"/api/pipelines/runs/{run.id}/junit")

    assert response.status_code == 409

def test_junit_report_marks_unfinished_stage_aborted(client):
    run = fake_run(status="aborted", outcome="aborted")
    run.stages[0].status = "pending"
    with patch("api.src.routes.pipelines.load_run", AsyncMock(return_value=run)):
        response = client.get(f"/api/pipelines/runs/{run.id}/junit")

    suite = ET.fromstring(response.content)
    assert suite.get("errors") == "1"

def test_run_status_merges_live_stage_status(client):
    run = fake_run(status="running", outcome=None)
    run.stages[0].status = "pending"
    with patch("api.src.routes.pipelines.load_run", AsyncMock(return_value=run)), \
         patch("api.src.routes.pipelines.get_run_status", AsyncMock(return_value="running")), \
         patch("api.src.routes.pipelines.get_stage_statuses", AsyncMock(return_value={"Deploy": "running"})):
        response = client.get(f"/api/pipelines/runs/{run.id}/status")

    body = response.json()
    assert body["live_status"] == "running"
    assert [(s["name"], s["status"]) for s in body["stages"]] == [
        ("Checkout", "success"),
        ("Build", "failure"),
        ("Deploy", "running"),
    ]
