"""Shared enums and the immutable report contract."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from hydra.core.config import Settings


# ── Enums ────────────────────────────────────────────────────────────────────


class ViolationKind(str, enum.Enum):
    """Robust-safety violation codes."""

    HYDRA001 = "HYDRA001"  # mutable reference to internal state escapes
    HYDRA002 = "HYDRA002"  # closed-world invariant violated (oracle)
    HYDRA003 = "HYDRA003"  # internal representation exposed read-only


class Severity(str, enum.Enum):
    """Violation severity level."""

    CRITICAL = "critical"
    WARNING = "warning"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {Severity.WARNING: 1, Severity.CRITICAL: 2}


class CertificationState(str, enum.Enum):
    """Per-module certification outcome."""

    PENDING = "pending"
    CERTIFIED = "certified"
    VIOLATED = "violated"
    INDETERMINATE = "indeterminate"


# ── Shared Schemas ───────────────────────────────────────────────────────────


class Location(BaseModel):
    """Best-effort location of a finding: a source span or a bytecode offset."""

    model_config = ConfigDict(frozen=True)

    file_path: str = ""
    start_line: int | None = None
    end_line: int | None = None
    bytecode_offset: int | None = None

    def __str__(self) -> str:
        if self.start_line is not None:
            return f"{self.file_path or '<source>'}:{self.start_line}"
        if self.bytecode_offset is not None:
            return f"{self.file_path or '<bytecode>'}@0x{self.bytecode_offset:x}"
        return self.file_path or "<unknown>"


class Violation(BaseModel):
    """A single robust-safety violation. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    kind: ViolationKind
    module_id: str
    function: str
    location: Location = Field(default_factory=Location)
    severity: Severity
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    message: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class ModuleReport(BaseModel):
    """Final verdict for one module."""

    model_config = ConfigDict(frozen=True)

    module_id: str
    certification_state: CertificationState
    violations: tuple[Violation, ...] = ()
    confidence: float = 1.0
    diagnostics: tuple[str, ...] = ()
    decompiled: bool = False

    @property
    def low_confidence(self) -> bool:
        return any(v.confidence < 1.0 for v in self.violations) or self.confidence < 1.0


class BatchSummary(BaseModel):
    """Derived batch statistics. Never mutated directly."""

    model_config = ConfigDict(frozen=True)

    total_modules: int = 0
    certified_modules: int = 0
    certification_rate: float = 0.0
    total_violations: int = 0
    critical_violations: int = 0
    indeterminate_modules: int = 0
    low_confidence_modules: int = 0


class BatchReport(BaseModel):
    """The sole contract handed to report rendering."""

    model_config = ConfigDict(frozen=True)

    modules: tuple[ModuleReport, ...] = ()
    summary: BatchSummary = Field(default_factory=BatchSummary)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_modules(
        cls,
        modules: list[ModuleReport],
        min_confidence: float = 0.0,
        metadata: dict[str, Any] | None = None,
    ) -> "BatchReport":
        """Build a report and derive its summary from the module verdicts."""
        total = len(modules)
        certified = sum(1 for m in modules if m.certification_state == CertificationState.CERTIFIED)
        violations = [v for m in modules for v in m.violations]
        summary = BatchSummary(
            total_modules=total,
            certified_modules=certified,
            certification_rate=(certified / total) if total else 0.0,
            total_violations=len(violations),
            critical_violations=sum(1 for v in violations if v.severity == Severity.CRITICAL),
            indeterminate_modules=sum(
                1 for m in modules if m.certification_state == CertificationState.INDETERMINATE
            ),
            low_confidence_modules=sum(1 for m in modules if m.confidence < min_confidence),
        )
        return cls(modules=tuple(modules), summary=summary, metadata=metadata or {})

    def actionable_violations(self, min_confidence: float) -> list[Violation]:
        """Violations whose confidence is high enough to drive a decision."""
        return [
            v for m in self.modules for v in m.violations
            if v.confidence >= min_confidence
        ]

    def filtered(self, min_confidence: float) -> "BatchReport":
        """Display projection hiding low-confidence violations.

        Certification states and the summary are carried over unchanged, so
        filtering never alters a verdict.
        """
        modules = tuple(
            m.model_copy(update={
                "violations": tuple(v for v in m.violations if v.confidence >= min_confidence),
            })
            for m in self.modules
        )
        return self.model_copy(update={"modules": modules})


def exit_code(report: BatchReport, settings: Settings) -> int:
    """Process exit code expected by the command-line collaborator.

    Strict mode fails on any reported violation, low-confidence ones
    included; otherwise only violations at or above ``min_confidence`` count.
    """
    actionable = report.actionable_violations(settings.min_confidence)
    if settings.strict_mode and report.summary.total_violations:
        return 1
    if settings.max_violations and len(actionable) > settings.max_violations:
        return 1
    if any(v.severity == Severity.CRITICAL for v in actionable):
        return 1
    return 0
