"""
Run environment: the key/value context shared by all stages of one run.
"""

import logging
import re
from collections.abc import MutableMapping
from typing import Dict, Iterator, Optional

from runner.src.errors import EnvironmentMutationError, GateEvaluationError

logger = logging.getLogger(__name__)

_VAR_PATTERN = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<named>[A-Za-z_][A-Za-z0-9_]*))")


class Environment(MutableMapping):
    """
    Append-only string mapping passed by reference into every stage.

    New keys can be assigned freely. Changing an existing value must go
    through `recompute()` so that mid-run corrections are explicit.
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = {}
        for key, value in (initial or {}).items():
            self[key] = value

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __setitem__(self, key: str, value) -> None:
        if key in self._values and self._values[key] != str(value):
            raise EnvironmentMutationError(
                f"Environment key '{key}' already set; use recompute() to change it"
            )
        self._values[key] = str(value)

    def __delitem__(self, key: str) -> None:
        raise EnvironmentMutationError(f"Environment key '{key}' cannot be deleted")

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Environment({self._values!r})"

    def recompute(self, key: str, value) -> None:
        """Explicitly replace a value resolved mid-run (e.g. commit id)."""
        old = self._values.get(key)
        self._values[key] = str(value)
        if old is not None and old != self._values[key]:
            logger.debug(f"Recomputed {key}: {old!r} -> {self._values[key]!r}")

    def require(self, key: str) -> str:
        """Get a value that a gate depends on."""
        value = self._values.get(key)
        if not value:
            raise GateEvaluationError(f"Environment key '{key}' is missing or empty")
        return value

    def snapshot(self) -> Dict[str, str]:
        return dict(self._values)

    def expand(self, template: str) -> str:
        """Substitute ${VAR} / $VAR references. Unknown names are kept as-is."""
        def replace(match):
            name = match.group("braced") or match.group("named")
            if name in self._values:
                return self._values[name]
            return match.group(0)

        return _VAR_PATTERN.sub(replace, template)
