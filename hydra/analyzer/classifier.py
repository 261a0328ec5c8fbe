"""Violation classifier — maps escape verdicts to robust-safety violations.

Rules:
    HYDRA001  public/friend function resolves to InvRef. Critical when its
              declared return is a reference (a direct mutable-state leak);
              Warning otherwise (InvRef reached only through conservative
              defaults or malformed types).
    HYDRA002  closed-world invariant violation reported by the oracle,
              merged verbatim.
    HYDRA003  public/friend function resolves to OkRef while its returned
              reference points at an internal struct of its own module.
              Only with ``structural_exposure`` enabled. Evaluated
              independently of HYDRA001.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from hydra.analyzer.escape import EscapeResult
from hydra.analyzer.model import (
    AbstractValue,
    Function,
    Module,
    StructTable,
    TypeContext,
    Unresolved,
    is_reference,
    struct_table,
    underlying,
)
from hydra.core.errors import MalformedType
from hydra.core.types import (
    BatchReport,
    CertificationState,
    ModuleReport,
    Severity,
    Violation,
    ViolationKind,
)
from hydra.verifier.oracle import OracleVerdict

logger = logging.getLogger(__name__)


@dataclass
class ClassifierPolicy:
    """Knobs taken from the runtime settings."""
    structural_exposure: bool = False


@dataclass
class ModuleClassification:
    """Escape-analysis violations of one module before the oracle merge."""
    module_id: str
    violations: list[Violation] = field(default_factory=list)
    confidence: float = 1.0
    diagnostics: list[str] = field(default_factory=list)

    @property
    def blocking(self) -> list[Violation]:
        """HYDRA001/HYDRA003 at or above Warning."""
        return [
            v for v in self.violations
            if v.kind in (ViolationKind.HYDRA001, ViolationKind.HYDRA003)
            and v.severity.at_least(Severity.WARNING)
        ]


class ViolationClassifier:
    """Classify a batch of modules from a resolved escape result."""

    def __init__(self, policy: ClassifierPolicy | None = None) -> None:
        self.policy = policy or ClassifierPolicy()

    def classify_module(
        self,
        module: Module,
        escape: EscapeResult,
        structs: StructTable | None = None,
    ) -> ModuleClassification:
        structs = structs if structs is not None else struct_table([module])
        result = ModuleClassification(module_id=module.module_id)
        result.diagnostics.extend(module.diagnostics)

        confidences: list[float] = []
        for func in module.visible_functions:
            value = escape.values.get(func.id, func.resolved_abstract_value)
            confidence = escape.confidence.get(func.id, func.confidence)
            confidences.append(confidence)
            for note in escape.diagnostics.get(func.id, []):
                result.diagnostics.append(f"{func.name}: {note}")

            violation = self._hydra001(module, func, value, confidence, escape)
            if violation is not None:
                result.violations.append(violation)
            if self.policy.structural_exposure:
                violation = self._hydra003(module, func, value, confidence, structs)
                if violation is not None:
                    result.violations.append(violation)

        result.confidence = min(confidences) if confidences else 1.0
        logger.debug(
            "Classified %s: %d violations, confidence %.2f",
            module.module_id, len(result.violations), result.confidence,
            extra={"module_id": module.module_id},
        )
        return result

    def _hydra001(
        self,
        module: Module,
        func: Function,
        value: AbstractValue,
        confidence: float,
        escape: EscapeResult,
    ) -> Violation | None:
        if value != AbstractValue.INV_REF:
            return None
        direct = is_reference(func.declared_return)
        uncertain = func.id in escape.uncertain
        if direct:
            message = (
                f"`{func.name}` returns `{func.declared_return}`, a reference through which "
                f"callers outside {module.module_id} can mutate its internal state."
            )
        elif isinstance(func.declared_return, Unresolved):
            message = (
                f"`{func.name}` has an unresolvable return type "
                f"`{func.declared_return.text}`; assuming it leaks a mutable reference."
            )
        else:
            message = (
                f"`{func.name}` could not be shown to keep mutable references to "
                f"internal state inside {module.module_id}."
            )
        if uncertain:
            message += " Verdict is conservative: the function body was unavailable."
        return Violation(
            kind=ViolationKind.HYDRA001,
            module_id=module.module_id,
            function=func.name,
            location=func.location,
            severity=Severity.CRITICAL if direct else Severity.WARNING,
            confidence=confidence,
            message=message,
            metadata={
                "abstract_value": value.name,
                "declared_return": str(func.declared_return),
                "uncertain": uncertain,
                "body_origin": func.body_origin.value,
            },
        )

    def _hydra003(
        self,
        module: Module,
        func: Function,
        value: AbstractValue,
        confidence: float,
        structs: StructTable,
    ) -> Violation | None:
        if value != AbstractValue.OK_REF or not is_reference(func.declared_return):
            return None
        ctx = TypeContext(module.module_id, structs)
        try:
            exposes = ctx.reaches_internal(underlying(func.declared_return))
        except MalformedType:
            # Already reported through absty diagnostics
            return None
        if not exposes:
            return None
        return Violation(
            kind=ViolationKind.HYDRA003,
            module_id=module.module_id,
            function=func.name,
            location=func.location,
            severity=Severity.WARNING,
            confidence=confidence,
            message=(
                f"`{func.name}` exposes the internal representation of "
                f"`{underlying(func.declared_return)}` through an immutable reference."
            ),
            metadata={
                "abstract_value": value.name,
                "declared_return": str(func.declared_return),
            },
        )


def certify(
    classification: ModuleClassification,
    verdict: OracleVerdict | None,
    decompiled: bool = False,
) -> ModuleReport:
    """Merge escape violations with the oracle verdict into a module report."""
    violations = list(classification.violations)
    diagnostics = list(classification.diagnostics)

    if verdict is not None:
        violations.extend(verdict.violations)
        if verdict.diagnostic:
            diagnostics.append(verdict.diagnostic)

    if classification.blocking:
        state = CertificationState.VIOLATED
    elif verdict is None:
        state = CertificationState.INDETERMINATE
        diagnostics.append("invariant oracle verdict unavailable")
    elif verdict.passed:
        state = CertificationState.CERTIFIED
    else:
        state = CertificationState.VIOLATED

    return ModuleReport(
        module_id=classification.module_id,
        certification_state=state,
        violations=tuple(violations),
        confidence=classification.confidence,
        diagnostics=tuple(dict.fromkeys(diagnostics)),
        decompiled=decompiled,
    )


def aggregate(reports: Iterable[ModuleReport], min_confidence: float = 0.0) -> BatchReport:
    """Batch report with a derived summary."""
    return BatchReport.from_modules(list(reports), min_confidence=min_confidence)
