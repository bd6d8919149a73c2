"""
External command execution.

Every call yields a CommandResult (exit code, stdout, stderr); whether a
non-zero exit fails the stage is decided by the caller.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Dict, Optional

from runner.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class CommandResult:
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class LocalCommandRunner:
    """Runs commands with /bin/sh on the worker host."""

    def __init__(self, shell: str = "/bin/sh", inherit_env: bool = True):
        self.shell = shell
        self.inherit_env = inherit_env

    async def run(
        self,
        command: str,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        image: Optional[str] = None,
    ) -> CommandResult:
        process_env = dict(os.environ) if self.inherit_env else {}
        process_env.update(env or {})

        if cwd and not os.path.isdir(cwd):
            cwd = None

        logger.debug(f"Running command: {command}")
        start = time.monotonic()

        process = await asyncio.create_subprocess_exec(
            self.shell, "-c", command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=process_env,
            cwd=cwd,
        )

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # Deadline fired: kill the process before propagating
            logger.warning(f"Killing command on cancellation: {command}")
            if process.returncode is None:
                process.kill()
            # Drain the pipes so the transport closes before the loop does
            await process.communicate()
            raise

        return CommandResult(
            command=command,
            exit_code=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_seconds=round(time.monotonic() - start, 2),
        )


class KubernetesCommandRunner:
    """
    Runs each command as a Kubernetes Job in the stage's image.

    Pod logs are returned as stdout; the container exit code is read from
    the terminated pod status.
    """

    def __init__(self, run_id: str = "local", default_image: Optional[str] = None):
        self.run_id = run_id
        self.default_image = default_image or settings.default_image
        self._counter = 0

    async def run(
        self,
        command: str,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        image: Optional[str] = None,
    ) -> CommandResult:
        from runner.src.k8s import (
            build_job,
            create_job,
            delete_job,
            get_batch_api,
            get_job_exit_code,
            get_job_status,
            collect_logs,
        )

        self._counter += 1
        job = build_job(
            run_id=self.run_id,
            command_index=self._counter,
            stage_name=(env or {}).get("STAGE_NAME", "command"),
            image=image or self.default_image,
            command=command,
            env_vars=env,
            timeout=settings.job_timeout,
        )
        job_name = job.metadata.name
        start = time.monotonic()

        await asyncio.to_thread(create_job, job)
        logger.info(f"Created job {job_name} for: {command}")

        try:
            batch_v1 = get_batch_api()
            while True:
                current = await asyncio.to_thread(
                    batch_v1.read_namespaced_job,
                    name=job_name,
                    namespace=settings.k8s_namespace,
                )
                status = get_job_status(current)
                if status in ("succeeded", "failed"):
                    break
                await asyncio.sleep(2)
        except asyncio.CancelledError:
            logger.warning(f"Deleting job {job_name} on cancellation")
            await asyncio.to_thread(delete_job, job_name)
            raise

        logs = await asyncio.to_thread(collect_logs, job_name)
        exit_code = await asyncio.to_thread(get_job_exit_code, job_name)
        if exit_code is None:
            exit_code = 0 if status == "succeeded" else 1

        return CommandResult(
            command=command,
            exit_code=exit_code,
            stdout=logs,
            duration_seconds=round(time.monotonic() - start, 2),
        )


def get_command_runner(run_id: str = "local"):
    """Select the command runner configured by `command_backend`."""
    if settings.command_backend == "kubernetes":
        return KubernetesCommandRunner(run_id=run_id)
    return LocalCommandRunner()
