"""
Stage and run outcome enums.
"""

from enum import Enum
from typing import Iterable


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    UNSTABLE = "unstable"
    ABORTED = "aborted"
    SKIPPED = "skipped"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @property
    def halts(self) -> bool:
        """Whether this outcome stops the remaining stages."""
        return self in (Outcome.FAILURE, Outcome.ABORTED)


# Skipped counts as success when aggregating
_SEVERITY = {
    Outcome.SKIPPED: 0,
    Outcome.SUCCESS: 0,
    Outcome.UNSTABLE: 1,
    Outcome.FAILURE: 2,
    Outcome.ABORTED: 3,
}


def worst_outcome(outcomes: Iterable[Outcome]) -> Outcome:
    """Aggregate outcome: the most severe of all stage outcomes."""
    worst = Outcome.SUCCESS
    for outcome in outcomes:
        if outcome.severity > worst.severity:
            worst = outcome
    return worst


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNSTABLE = "unstable"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunState.PENDING, RunState.RUNNING)

    @classmethod
    def from_outcome(cls, outcome: Outcome) -> "RunState":
        return {
            Outcome.SUCCESS: cls.SUCCEEDED,
            Outcome.SKIPPED: cls.SUCCEEDED,
            Outcome.UNSTABLE: cls.UNSTABLE,
            Outcome.FAILURE: cls.FAILED,
            Outcome.ABORTED: cls.ABORTED,
        }[outcome]


class PostCondition(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    UNSTABLE = "unstable"
    ABORTED = "aborted"
    ALWAYS = "always"

    @classmethod
    def for_outcome(cls, outcome: Outcome) -> "PostCondition":
        if outcome == Outcome.SKIPPED:
            return cls.SUCCESS
        return cls(outcome.value)
