from runner.src.services.executor import (
    PipelineRunner,
    get_runner,
    run_pipeline,
)
from runner.src.services.commands import (
    CommandResult,
    LocalCommandRunner,
    KubernetesCommandRunner,
    get_command_runner,
)
from runner.src.services.gates import (
    always,
    branch_is,
    env_equals,
    all_of,
    any_of,
    negate,
    gate_from_config,
)
from runner.src.services.pipeline_builder import (
    build_environment,
    build_stages,
    build_post_hooks,
)
from runner.src.services.run_lock import RunLock
from runner.src.services.status_reporter import (
    RunReporter,
    LoggingReporter,
    DatabaseReporter,
    RedisStatusReporter,
    WebhookReporter,
    JUnitReporter,
    run_summary,
)

__all__ = [
    "PipelineRunner",
    "get_runner",
    "run_pipeline",
    "CommandResult",
    "LocalCommandRunner",
    "KubernetesCommandRunner",
    "get_command_runner",
    "always",
    "branch_is",
    "env_equals",
    "all_of",
    "any_of",
    "negate",
    "gate_from_config",
    "build_environment",
    "build_stages",
    "build_post_hooks",
    "RunLock",
    "RunReporter",
    "LoggingReporter",
    "DatabaseReporter",
    "RedisStatusReporter",
    "WebhookReporter",
    "JUnitReporter",
    "run_summary",
]
