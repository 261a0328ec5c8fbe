"""Closed-world invariant oracle interface.

The program verifier that checks a module's local invariants runs outside
this engine. Its per-module verdict is consumed through ``InvariantOracle``
and merged only at classification time: a failing verdict contributes
HYDRA002 violations verbatim, a missing verdict makes the module
``Indeterminate``.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Mapping

from hydra.analyzer.model import Module
from hydra.core.errors import OracleUnreachable
from hydra.core.types import Location, Severity, Violation, ViolationKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalInvariantFailure:
    """One local invariant the verifier could not prove."""
    invariant: str
    function: str = ""
    message: str = ""
    location: Location = field(default_factory=Location)


@dataclass
class OracleVerdict:
    """Verifier outcome for one module."""
    module_id: str
    passed: bool
    violations: list[Violation] = field(default_factory=list)
    diagnostic: str = ""

    @classmethod
    def ok(cls, module_id: str) -> "OracleVerdict":
        return cls(module_id=module_id, passed=True)

    @classmethod
    def failed(cls, module_id: str, failures: list[LocalInvariantFailure]) -> "OracleVerdict":
        """Wrap verifier failures as HYDRA002 violations."""
        violations = [
            Violation(
                kind=ViolationKind.HYDRA002,
                module_id=module_id,
                function=f.function,
                location=f.location,
                severity=Severity.CRITICAL,
                confidence=1.0,
                message=f.message or f"local invariant `{f.invariant}` does not hold",
                metadata={"invariant": f.invariant},
            )
            for f in failures
        ]
        return cls(module_id=module_id, passed=False, violations=violations)


class InvariantOracle(abc.ABC):
    """Capability interface for the closed-world invariant verifier."""

    @abc.abstractmethod
    async def verify(self, module: Module) -> OracleVerdict:
        """Return the verdict for ``module`` or raise OracleUnreachable."""


class StaticOracle(InvariantOracle):
    """Serves verdicts computed ahead of time by the verifier, keyed by module id."""

    def __init__(self, verdicts: Mapping[str, OracleVerdict | bool] | None = None) -> None:
        self._verdicts: dict[str, OracleVerdict] = {}
        for module_id, verdict in (verdicts or {}).items():
            self.record(module_id, verdict)

    def record(self, module_id: str, verdict: OracleVerdict | bool) -> None:
        if isinstance(verdict, bool):
            verdict = OracleVerdict(module_id=module_id, passed=verdict)
        self._verdicts[module_id] = verdict

    async def verify(self, module: Module) -> OracleVerdict:
        verdict = self._verdicts.get(module.module_id)
        if verdict is None:
            raise OracleUnreachable(
                f"no verifier verdict recorded for {module.module_id}",
                module_id=module.module_id,
            )
        return verdict
