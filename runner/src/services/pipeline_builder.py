"""
Build executable stages from a validated pipeline definition.
"""

import glob
import logging
import os
import shlex
from typing import Any, Dict, List, Optional

from runner.src.errors import StageActionFailure
from runner.src.models.environment import Environment
from runner.src.models.outcome import PostCondition
from runner.src.models.stage import Run, Stage, StageContext, StageResult
from runner.src.models.step import PipelineConfig, StageConfig, StepConfig
from runner.src.services.gates import gate_from_config

logger = logging.getLogger(__name__)

CHECKOUT_STAGE = "Checkout"


def build_environment(
    config: PipelineConfig,
    repo_info: Optional[Dict[str, Any]] = None,
    build_number: Optional[int] = None,
    workspace: Optional[str] = None,
) -> Environment:
    """Seed the run environment from the trigger, then the `environment:` block."""
    repo_info = repo_info or {}
    env = Environment()

    seeds = {
        "BRANCH_NAME": repo_info.get("branch"),
        "GIT_COMMIT": repo_info.get("commit_sha"),
        "GIT_URL": repo_info.get("clone_url"),
        "BUILD_NUMBER": build_number,
        "WORKSPACE": workspace,
    }
    for key, value in seeds.items():
        if value:
            env[key] = value

    # Declared order matters: later values may reference earlier ones
    for key, value in config.environment.items():
        env.recompute(key, env.expand(value))

    return env


def resolve_artifacts(patterns: List[str], workspace: Optional[str]) -> List[str]:
    """Resolve artifact globs under the workspace to absolute paths."""
    root = workspace or os.getcwd()
    found = []
    for pattern in patterns:
        for path in sorted(glob.glob(os.path.join(root, pattern), recursive=True)):
            path = os.path.abspath(path)
            if os.path.isfile(path) and path not in found:
                found.append(path)
    return found


def _run_steps_in_context(steps: List[StepConfig], image: Optional[str]):
    async def run_steps(ctx: StageContext):
        for step in steps:
            await ctx.sh(
                step.command,
                allow_failure=step.allow_failure,
                unstable=step.unstable,
                capture=step.capture,
                image=image,
            )
    return run_steps


def _stage_action(stage_config: StageConfig, image: Optional[str]):
    run_steps = _run_steps_in_context(stage_config.steps, image)

    async def action(ctx: StageContext):
        await run_steps(ctx)

        if stage_config.artifacts:
            paths = resolve_artifacts(stage_config.artifacts, ctx.env.get("WORKSPACE"))
            if not paths:
                raise StageActionFailure(
                    f"No artifacts matched {', '.join(stage_config.artifacts)}"
                )
            ctx.publish_artifacts(paths)
            ctx.log(f"Archived {len(paths)} artifact(s)")

    return action


def _stage_hooks(stage_config: StageConfig, image: Optional[str]):
    hooks = {}
    for condition, steps in stage_config.post.items():
        run_steps = _run_steps_in_context(steps, image)

        async def hook(ctx: StageContext, result: StageResult, run_steps=run_steps):
            await run_steps(ctx)

        hooks[PostCondition(condition)] = hook
    return hooks


def _checkout_action(repo_info: Dict[str, Any]):
    clone_url = repo_info["clone_url"]
    commit_sha = repo_info.get("commit_sha")

    async def action(ctx: StageContext):
        await ctx.sh(f"git clone --depth 1 {shlex.quote(clone_url)} .")
        if commit_sha:
            ref = shlex.quote(commit_sha)
            await ctx.sh(f"git fetch --depth 1 origin {ref}", allow_failure=True)
            await ctx.sh(f"git checkout {ref}")
        await ctx.sh("git rev-parse HEAD", capture="GIT_COMMIT")
        await ctx.sh("git rev-parse --short HEAD", capture="GIT_COMMIT_SHORT")

    return action


def build_stages(
    config: PipelineConfig,
    repo_info: Optional[Dict[str, Any]] = None,
) -> List[Stage]:
    """
    Turn a pipeline definition into Stage objects.

    When the trigger carries a clone URL, an implicit Checkout stage comes
    first and resolves GIT_COMMIT / GIT_COMMIT_SHORT from the clone.
    """
    stages = []

    if repo_info and repo_info.get("clone_url"):
        stages.append(Stage(
            name=CHECKOUT_STAGE,
            action=_checkout_action(repo_info),
            description="Clone the triggering commit into the workspace",
        ))

    for stage_config in config.stages:
        image = stage_config.image or config.image
        stages.append(Stage(
            name=stage_config.name,
            action=_stage_action(stage_config, image),
            gate=gate_from_config(stage_config.when) if stage_config.when else None,
            post=_stage_hooks(stage_config, image),
        ))

    return stages


def build_post_hooks(config: PipelineConfig, command_runner) -> Dict[PostCondition, Any]:
    """Run-level hooks executing the pipeline's `post:` steps."""
    hooks = {}
    for condition, steps in config.post.items():

        async def hook(run: Run, steps=steps):
            env = {**run.environment.snapshot(), "RUN_OUTCOME": run.outcome.value}
            for step in steps:
                result = await command_runner.run(
                    step.command,
                    env=env,
                    cwd=run.environment.get("WORKSPACE"),
                    image=config.image,
                )
                logger.info(f"[post] $ {step.command} -> {result.exit_code}")
                if not result.ok and not step.allow_failure:
                    raise StageActionFailure(
                        f"'{step.command}' exited with code {result.exit_code}",
                        exit_code=result.exit_code,
                    )

        hooks[PostCondition(condition)] = hook
    return hooks
