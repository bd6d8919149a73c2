"""
Gate predicates over the run environment.

Gates are evaluated fresh against the live environment right before the
stage they guard; nothing is cached between evaluations.
"""

from fnmatch import fnmatchcase
from typing import Any, Dict

from runner.src.errors import GateEvaluationError
from runner.src.models.environment import Environment
from runner.src.models.stage import StageGate

BRANCH_KEY = "BRANCH_NAME"


def always() -> StageGate:
    def gate(env: Environment) -> bool:
        return True
    return gate


def branch_is(pattern: str) -> StageGate:
    """Run only when BRANCH_NAME matches `pattern` (exact or glob)."""
    def gate(env: Environment) -> bool:
        return fnmatchcase(env.require(BRANCH_KEY), pattern)
    gate.__name__ = f"branch_is({pattern})"
    return gate


def env_equals(key: str, value: str) -> StageGate:
    def gate(env: Environment) -> bool:
        return env.require(key) == str(value)
    gate.__name__ = f"env_equals({key}={value})"
    return gate


def all_of(*gates: StageGate) -> StageGate:
    def gate(env: Environment) -> bool:
        return all(g(env) for g in gates)
    return gate


def any_of(*gates: StageGate) -> StageGate:
    def gate(env: Environment) -> bool:
        return any(g(env) for g in gates)
    return gate


def negate(inner: StageGate) -> StageGate:
    def gate(env: Environment) -> bool:
        return not inner(env)
    return gate


def gate_from_config(when: Dict[str, Any]) -> StageGate:
    """
    Build a gate from a `when:` block.

    Supported keys (all must hold): branch, environment, not, any_of.
    """
    if not when:
        return always()

    gates = []
    for key, value in when.items():
        if key == "branch":
            gates.append(branch_is(str(value)))
        elif key == "environment":
            gates.extend(env_equals(k, v) for k, v in value.items())
        elif key == "not":
            gates.append(negate(gate_from_config(value)))
        elif key == "any_of":
            gates.append(any_of(*(gate_from_config(item) for item in value)))
        else:
            raise GateEvaluationError(f"Unknown gate condition '{key}'")

    if len(gates) == 1:
        return gates[0]
    return all_of(*gates)
