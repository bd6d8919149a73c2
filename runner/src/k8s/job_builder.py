"""
Kubernetes Job builder for stage commands.

One Job runs one shell command of a stage; the run id and the command's
position within the run identify it.
"""

from kubernetes import client
from typing import Dict, Optional
import hashlib
import re

from runner.src.config import get_settings

settings = get_settings()

# Env names Kubernetes accepts in a container spec
ENV_NAME = re.compile(r"^[-._a-zA-Z][-._a-zA-Z0-9]*$")

def safe_label(value: str, limit: int = 20, fallback: str = "stage") -> str:
    """Lowercase DNS-1123 fragment of `value`."""
    safe = value.lower().replace(" ", "-").replace("_", "-")
    safe = "".join(c for c in safe if c.isalnum() or c == "-")
    return safe[:limit].strip("-") or fallback

def build_job_name(run_id: str, command_index: int, stage_name: str) -> str:
    """Generate a unique job name."""
    # K8s names must be lowercase, alphanumeric, max 63 chars
    run_hash = hashlib.md5(run_id.encode()).hexdigest()[:8]
    return f"sl-{run_hash}-{command_index}-{safe_label(stage_name)}"

def build_env(run_id: str, command_index: int, env_vars: Optional[Dict[str, str]]) -> list:
    env = {
        "STAGELINE_RUN_ID": run_id,
        "STAGELINE_STEP_ORDER": str(command_index),
    }
    for key, value in (env_vars or {}).items():
        if ENV_NAME.match(key):
            env.setdefault(key, str(value))
    return [client.V1EnvVar(name=key, value=value) for key, value in sorted(env.items())]

def build_job(
    run_id: str,
    command_index: int,
    stage_name: str,
    image: str,
    command: str,
    env_vars: Optional[Dict[str, str]] = None,
    timeout: int = 600,
) -> client.V1Job:
    """
    Build a Kubernetes Job running one stage command in `image`.
    """
    job_name = build_job_name(run_id, command_index, stage_name)

    labels = {
        "app": "stageline",
        "run-id": run_id,
        "stage": safe_label(stage_name, limit=63),
        "step-order": str(command_index),
    }

    container = client.V1Container(
        name="step",
        image=image,
        command=["/bin/sh", "-c"],
        args=[command],
        env=build_env(run_id, command_index, env_vars),
        resources=client.V1ResourceRequirements(
            requests={"cpu": settings.job_cpu_request, "memory": settings.job_memory_request},
            limits={"cpu": settings.job_cpu_limit, "memory": settings.job_memory_limit},
        ),
    )

    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=labels),
        spec=client.V1PodSpec(containers=[container], restart_policy="Never"),
    )

    job_spec = client.V1JobSpec(
        template=template,
        backoff_limit=0,  # a failed command is a stage result, never retried
        active_deadline_seconds=timeout,
        ttl_seconds_after_finished=settings.job_ttl_after_finished,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=settings.k8s_namespace,
            labels=labels,
        ),
        spec=job_spec,
    )

def get_job_status(job: client.V1Job) -> str:
    """
    Map a Job to 'pending', 'running', 'succeeded' or 'failed'.
    """
    status = job.status
    if status is None:
        return "pending"
    if status.succeeded:
        return "succeeded"
    if status.failed:
        return "failed"
    if status.active:
        return "running"
    return "pending"
