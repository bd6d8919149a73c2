"""
Runner exception types.
"""


class RunnerError(Exception):
    """Base class for pipeline runner errors."""
    pass


class PipelineDefinitionError(RunnerError):
    """Raised when a stage list cannot be executed (empty, duplicate names)."""
    pass


class StageActionFailure(RunnerError):
    """Raised by a stage action to signal failure (e.g. non-zero exit)."""

    def __init__(self, message: str, exit_code: int = None):
        super().__init__(message)
        self.exit_code = exit_code


class TimeoutExceeded(RunnerError):
    """The pipeline-level deadline elapsed."""
    pass


class HookFailure(RunnerError):
    """A post hook failed. Logged, never escalated."""
    pass


class GateEvaluationError(RunnerError):
    """A gate predicate could not be evaluated (e.g. missing env key)."""
    pass


class EnvironmentMutationError(RunnerError):
    """Raised on overwrite or deletion of an existing environment key."""
    pass


class ConcurrentRunRejected(RunnerError):
    """Raised when the run queue for a pipeline is full."""
    pass


class InvalidRunTransition(RunnerError):
    """Raised on an illegal Run state transition."""
    pass
