"""
Stageline Runner - Main entry point.

With no arguments the runner starts the queue worker. `run <file>` executes
a pipeline definition locally against a workspace directory.
"""

import argparse
import asyncio
import logging
import os
import sys

import yaml

from runner.src.config import get_settings
from runner.src.models.outcome import RunState
from runner.src.models.step import PipelineConfig
from runner.src.services.commands import LocalCommandRunner
from runner.src.services.executor import get_runner
from runner.src.services.pipeline_builder import (
    build_environment,
    build_post_hooks,
    build_stages,
)
from runner.src.services.status_reporter import JUnitReporter, LoggingReporter

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="stageline-runner")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("worker", help="Consume pipeline jobs from Redis (default)")

    run_parser = subparsers.add_parser("run", help="Run a pipeline file locally")
    run_parser.add_argument("file", help="Path to the pipeline YAML")
    run_parser.add_argument("--branch", default="main")
    run_parser.add_argument("--commit", default="")
    run_parser.add_argument("--build-number", type=int, default=None)
    run_parser.add_argument("--workspace", default=".")
    run_parser.add_argument("--report-dir", default=settings.report_dir)

    return parser.parse_args(argv)

def run_local(args) -> int:
    """Execute a pipeline file locally. Returns the process exit code."""
    with open(args.file, "r") as f:
        config = PipelineConfig.model_validate(yaml.safe_load(f))

    workspace = os.path.abspath(args.workspace)
    repo_info = {"branch": args.branch, "commit_sha": args.commit}
    env = build_environment(config, repo_info, args.build_number, workspace)
    command_runner = LocalCommandRunner()

    runner = get_runner(
        config.name,
        reporters=[LoggingReporter(), JUnitReporter(args.report_dir)],
        command_runner=command_runner,
    )
    run = asyncio.run(runner.execute(
        build_stages(config),
        config.options.to_run_config(hook_timeout=settings.hook_timeout),
        environment=env,
        post=build_post_hooks(config, command_runner),
        build_number=args.build_number,
    ))

    for result in run.stages:
        logger.info(f"  {result.order}. {result.name}: {result.outcome.value}")
    logger.info(f"Run {run.run_id} finished: {run.state.value}")

    return 0 if run.state in (RunState.SUCCEEDED, RunState.UNSTABLE) else 1

def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    if args.command == "run":
        sys.exit(run_local(args))

    from runner.src.worker import run_worker

    logger.info("Starting Stageline Runner")
    logger.info(f"Command backend: {settings.command_backend}")
    logger.info(f"Redis URL: {settings.redis_url}")

    if settings.command_backend == "kubernetes":
        from runner.src.k8s.client import init_k8s_client, ensure_namespace

        if not init_k8s_client():
            logger.error("Failed to initialize Kubernetes client")
            sys.exit(1)

        try:
            ensure_namespace()
        except Exception as e:
            logger.error(f"Failed to ensure namespace: {e}")
            sys.exit(1)

    logger.info("Starting worker...")
    run_worker()

if __name__ == "__main__":
    main()
