"""Certification orchestrator — coordinates the hybrid analysis pipeline."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Iterable

from hydra.analyzer.classifier import (
    ClassifierPolicy,
    ModuleClassification,
    ViolationClassifier,
    certify,
)
from hydra.analyzer.escape import EscapeAnalysisEngine, EscapeResult
from hydra.analyzer.model import (
    BodyOrigin,
    Function,
    Module,
    StructTable,
    struct_table,
)
from hydra.analyzer.move.move_parser import parse_move_source
from hydra.core.config import Settings, get_settings
from hydra.core.errors import OracleUnreachable, SourceParseError
from hydra.core.types import BatchReport, CertificationState
from hydra.decompiler.base import DecompileResult
from hydra.decompiler.guard import DecompilationContext
from hydra.pipeline.selector import AnalysisSourceSelector, SourcePlan
from hydra.verifier.oracle import InvariantOracle, OracleVerdict

logger = logging.getLogger(__name__)


class CertificationOrchestrator:
    """Coordinates robust-safety certification of a batch of modules.

    Flow:
    1. SELECTING — Choose an analysis source per module
    2. FIRST_PASS — Escape analysis over the whole batch, provisional verdicts
    3. DECOMPILING — Decompile modules with uncertain public/friend functions
    4. SECOND_PASS — Re-run escape analysis with the decompiled bodies
    5. CLASSIFYING — Merge oracle verdicts, final classification
    6. COMPLETED — Aggregate the batch report

    Oracle queries run concurrently with the analysis passes. Decompilation
    and oracle queries share one ``asyncio.Semaphore(max_workers)``.
    """

    def __init__(
        self,
        oracle: InvariantOracle,
        settings: Settings | None = None,
        decompilation: DecompilationContext | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._oracle = oracle
        if decompilation is None and self._settings.mad.enabled:
            decompilation = DecompilationContext.from_settings(self._settings)
        self._decompilation = decompilation
        self._selector = AnalysisSourceSelector(self._settings.mad)
        self._classifier = ViolationClassifier(
            ClassifierPolicy(structural_exposure=self._settings.structural_exposure)
        )

    @property
    def decompilation(self) -> DecompilationContext | None:
        return self._decompilation

    async def certify(
        self,
        modules: Iterable[Module],
        batch_id: str | None = None,
        task: Any = None,
    ) -> BatchReport:
        """Certify a batch and return its aggregated report."""
        batch_id = batch_id or uuid.uuid4().hex
        modules = list(modules)
        started = time.monotonic()
        log_extra = {"batch_id": batch_id}

        self._update_status(task, "SELECTING")
        for module in modules:
            module.certification_state = CertificationState.PENDING
            for func in module.functions.values():
                func.reset()
        plans = {m.module_id: self._selector.initial(m) for m in modules}
        logger.info(
            "Certifying %d module(s): %d with source, %d bytecode only",
            len(modules),
            sum(1 for p in plans.values() if p.confidence == 1.0),
            sum(1 for p in plans.values() if p.confidence < 1.0),
            extra=log_extra,
        )

        semaphore = asyncio.Semaphore(max(1, self._settings.max_workers))
        oracle_task = asyncio.ensure_future(self._query_oracle(modules, semaphore))
        try:
            self._update_status(task, "FIRST_PASS")
            escape = EscapeAnalysisEngine(modules).run()
            provisional = self._classify(modules, escape)
            provisional_violations = sum(len(c.blocking) for c in provisional.values())

            decompiled: set[str] = set()
            targets = self._selector.plan_decompilation(modules, escape)
            if targets and self._decompilation is not None:
                self._update_status(task, "DECOMPILING")
                decompiled = await self._decompile(modules, targets, escape, semaphore)
                if decompiled:
                    self._update_status(task, "SECOND_PASS")
                    escape = EscapeAnalysisEngine(modules).run()
            elif targets:
                for plan in targets:
                    logger.info(
                        "Decompilation disabled; keeping provisional result",
                        extra={"module_id": plan.module_id, **log_extra},
                    )

            final = self._classify(modules, escape)
            verdicts = await oracle_task
        except BaseException:
            oracle_task.cancel()
            raise

        self._update_status(task, "CLASSIFYING")
        reports = []
        for module in modules:
            classification = final[module.module_id]
            verdict = verdicts.get(module.module_id)
            if isinstance(verdict, str):
                classification.diagnostics.append(verdict)
                verdict = None
            report = certify(classification, verdict, decompiled=module.module_id in decompiled)
            module.certification_state = report.certification_state
            reports.append(report)

        metadata: dict[str, Any] = {
            "batch_id": batch_id,
            "duration_ms": round((time.monotonic() - started) * 1000),
            "provisional_violations": provisional_violations,
            "decompiled_modules": sorted(decompiled),
            "escape_evaluations": escape.evaluations,
        }
        if self._decompilation is not None:
            metadata["decompiler_calls"] = self._decompilation.calls
            metadata["cache"] = self._decompilation.cache.stats
            metadata["ledger"] = self._decompilation.ledger.snapshot()

        report = BatchReport.from_modules(reports, self._settings.min_confidence, metadata)
        self._update_status(task, "COMPLETED")
        logger.info(
            "Certified %d/%d module(s), %d violation(s), %d indeterminate",
            report.summary.certified_modules,
            report.summary.total_modules,
            report.summary.total_violations,
            report.summary.indeterminate_modules,
            extra={"duration_ms": metadata["duration_ms"], **log_extra},
        )
        return report

    # ── Passes ───────────────────────────────────────────────────────────────

    def _classify(self, modules: list[Module], escape: EscapeResult) -> dict[str, ModuleClassification]:
        structs = struct_table(modules)
        return {
            m.module_id: self._classifier.classify_module(m, escape, structs)
            for m in modules
        }

    async def _query_oracle(
        self,
        modules: list[Module],
        semaphore: asyncio.Semaphore,
    ) -> dict[str, OracleVerdict | str]:
        """Verdict per module, or the diagnostic explaining why there is none."""

        async def _one(module: Module) -> OracleVerdict | str:
            async with semaphore:
                try:
                    return await self._oracle.verify(module)
                except OracleUnreachable as exc:
                    logger.warning(
                        "Invariant oracle unreachable: %s", exc.message,
                        extra={"module_id": module.module_id},
                    )
                    return exc.to_diagnostic()
                except Exception as exc:
                    logger.exception(
                        "Invariant oracle failed", extra={"module_id": module.module_id},
                    )
                    return OracleUnreachable(f"oracle error: {exc}").to_diagnostic()

        results = await asyncio.gather(*(_one(m) for m in modules))
        return {m.module_id: r for m, r in zip(modules, results)}

    async def _decompile(
        self,
        modules: list[Module],
        plans: list[SourcePlan],
        escape: EscapeResult,
        semaphore: asyncio.Semaphore,
    ) -> set[str]:
        """Fetch decompiled bodies; returns the modules that received any."""
        assert self._decompilation is not None
        by_id = {m.module_id: m for m in modules}
        known = struct_table(modules)
        selective = self._settings.mad.selective_decompilation

        async def _one(plan: SourcePlan) -> bool:
            module = by_id[plan.module_id]
            assert module.bytecode is not None
            async with semaphore:
                outcome = await self._decompilation.decompile(module.bytecode)
            if not outcome.ok:
                module.diagnostics.append(
                    f"decompilation unavailable, provisional result kept: {outcome.error.to_diagnostic()}"
                )
                return False
            targets = [
                f for f in module.functions.values()
                if f.body is None and (not selective or f.id in escape.uncertain)
            ]
            return self._attach(module, targets, outcome.result, known)

        results = await asyncio.gather(*(_one(p) for p in plans))
        return {p.module_id for p, ok in zip(plans, results) if ok}

    def _attach(
        self,
        module: Module,
        targets: list[Function],
        result: DecompileResult,
        known: StructTable,
    ) -> bool:
        """Give ``targets`` the bodies found in the decompiled representation."""
        try:
            lifted = parse_move_source(
                result.representation, f"<decompiled {module.module_id}>", known,
            )
        except SourceParseError as exc:
            module.diagnostics.append(f"decompiled output unreadable: {exc.to_diagnostic()}")
            logger.warning(
                "Could not parse decompiled module: %s", exc.message,
                extra={"module_id": module.module_id},
            )
            return False

        candidate = next((m for m in lifted if m.module_id == module.module_id), None)
        if candidate is None and len(lifted) == 1:
            # Identical bytecode published under another address
            candidate = parse_move_source(
                result.representation,
                f"<decompiled {module.module_id}>",
                known,
                rename={lifted[0].module_id: module.module_id},
            )[0]
        if candidate is None:
            module.diagnostics.append("decompiled output does not declare this module")
            return False

        attached = 0
        for func in targets:
            source = candidate.functions.get(func.name)
            if source is None or source.body is None:
                module.diagnostics.append(f"{func.name}: no body in decompiled output")
                continue
            if len(source.parameters) != len(func.parameters):
                module.diagnostics.append(f"{func.name}: decompiled signature does not match bytecode")
                continue
            # Bodies refer to the decompiler's parameter names; types stay those of the bytecode
            func.parameters = [
                (name, ptype) for (name, _), (_, ptype) in zip(source.parameters, func.parameters)
            ]
            func.body = source.body
            func.body_origin = BodyOrigin.DECOMPILED
            func.confidence = result.confidence
            attached += 1

        logger.info(
            "Attached %d decompiled bod%s", attached, "y" if attached == 1 else "ies",
            extra={"module_id": module.module_id},
        )
        return attached > 0

    def _update_status(self, task: Any, step: str) -> None:
        """Update Celery task state."""
        if task:
            task.update_state(state="PROGRESS", meta={"step": step})


async def certify_modules(
    modules: Iterable[Module],
    oracle: InvariantOracle,
    settings: Settings | None = None,
    decompilation: DecompilationContext | None = None,
) -> BatchReport:
    """One-shot helper around CertificationOrchestrator."""
    orchestrator = CertificationOrchestrator(oracle, settings, decompilation)
    return await orchestrator.certify(modules)
