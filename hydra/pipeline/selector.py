"""Analysis source selection.

Decides per module where the analyzed function bodies come from:

    SourceAvailable                       -> DIRECT_SOURCE   (confidence 1.0)
    BytecodeOnly, first pass              -> DIRECT_BYTECODE (bodies unavailable)
    BytecodeOnly with an uncertain
    public/friend function                -> DECOMPILE
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Iterable

from hydra.analyzer.escape import EscapeResult
from hydra.analyzer.model import Module, ModuleOrigin
from hydra.core.config import MadSettings

logger = logging.getLogger(__name__)


class AnalysisSource(str, enum.Enum):
    DIRECT_SOURCE = "direct_source"
    DIRECT_BYTECODE = "direct_bytecode"
    DECOMPILE = "decompile"


@dataclass
class SourcePlan:
    """Selected source for one module and why."""
    module_id: str
    source: AnalysisSource
    confidence: float
    reason: str = ""
    functions: list[str] = field(default_factory=list)  # uncertain public/friend functions


class AnalysisSourceSelector:
    """Chooses the analysis source for each module of a batch."""

    def __init__(self, mad: MadSettings | None = None) -> None:
        self.mad = mad or MadSettings()

    def initial(self, module: Module) -> SourcePlan:
        """First-pass choice, before any escape result exists."""
        if module.origin is ModuleOrigin.SOURCE_AVAILABLE:
            return SourcePlan(module.module_id, AnalysisSource.DIRECT_SOURCE, 1.0, "source available")
        return SourcePlan(
            module.module_id,
            AnalysisSource.DIRECT_BYTECODE,
            0.0,
            "bytecode only; bodies unavailable",
        )

    def plan_decompilation(self, modules: Iterable[Module], escape: EscapeResult) -> list[SourcePlan]:
        """Modules whose uncertainty justifies a decompiler call.

        Selective mode picks exactly the modules enclosing an uncertain
        public/friend function. Otherwise every BytecodeOnly module with a
        bodyless public/friend function is picked. Nothing is picked while
        decompilation is disabled.
        """
        if not self.mad.enabled:
            return []
        plans: list[SourcePlan] = []
        for module in modules:
            if module.origin is not ModuleOrigin.BYTECODE_ONLY or module.bytecode is None:
                continue
            if self.mad.selective_decompilation:
                targets = [f.name for f in escape.uncertain_visible([module])]
                reason = "uncertain public/friend functions"
            else:
                targets = [f.name for f in module.visible_functions if f.body is None]
                reason = "bodyless public/friend functions"
            if targets:
                plans.append(SourcePlan(module.module_id, AnalysisSource.DECOMPILE, 0.0, reason, targets))

        logger.debug("Selected %d module(s) for decompilation", len(plans))
        return plans
