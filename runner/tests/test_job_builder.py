"""Tests for Kubernetes job construction."""

from kubernetes import client

from runner.src.k8s.job_builder import build_job, build_job_name, get_job_status


def test_job_name_is_dns_safe():
    name = build_job_name("0d5f2c1e-run", 3, "Docker Build_Image (amd64)")

    assert name.startswith("sl-")
    assert len(name) <= 63
    assert name == name.lower()
    assert all(c.isalnum() or c == "-" for c in name)


def test_job_name_falls_back_for_symbol_only_stage():
    assert build_job_name("run", 0, "!!!").endswith("-0-stage")


def test_build_job():
    job = build_job(
        run_id="run-1",
        command_index=2,
        stage_name="Unit Tests",
        image="maven:3.9",
        command="mvn -B test",
        env_vars={"BUILD_NUMBER": 12, "bad name": "x", "STAGELINE_RUN_ID": "spoofed"},
        timeout=300,
    )

    container = job.spec.template.spec.containers[0]
    env = {e.name: e.value for e in container.env}

    assert container.image == "maven:3.9"
    assert container.args == ["mvn -B test"]
    assert env["STAGELINE_RUN_ID"] == "run-1"
    assert env["BUILD_NUMBER"] == "12"
    assert "bad name" not in env
    assert job.spec.backoff_limit == 0
    assert job.spec.active_deadline_seconds == 300
    assert job.metadata.labels["app"] == "stageline"
    assert job.metadata.labels["stage"] == "unit-tests"


def test_get_job_status():
    assert get_job_status(client.V1Job()) == "pending"
    assert get_job_status(client.V1Job(status=client.V1JobStatus(active=1))) == "running"
    assert get_job_status(client.V1Job(status=client.V1JobStatus(succeeded=1))) == "succeeded"
    assert get_job_status(client.V1Job(status=client.V1JobStatus(failed=1))) == "failed"
