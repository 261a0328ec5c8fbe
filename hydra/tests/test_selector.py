"""Tests for analysis source selection."""

from __future__ import annotations

from hydra.analyzer.escape import analyze_modules
from hydra.analyzer.model import MutableReference, Struct
from hydra.core.config import MadSettings
from hydra.pipeline.selector import AnalysisSource, AnalysisSourceSelector
from hydra.tests.factories import bytecode_module, leaking_module, vault_module


class TestInitial:
    def test_source_module(self):
        plan = AnalysisSourceSelector().initial(leaking_module())
        assert plan.source == AnalysisSource.DIRECT_SOURCE
        assert plan.confidence == 1.0

    def test_bytecode_module(self):
        plan = AnalysisSourceSelector().initial(bytecode_module())
        assert plan.source == AnalysisSource.DIRECT_BYTECODE
        assert plan.confidence == 0.0


class TestPlanDecompilation:
    def test_disabled_plans_nothing(self):
        modules = [vault_module()]
        assert AnalysisSourceSelector(MadSettings()).plan_decompilation(modules, analyze_modules(modules)) == []

    def test_selective_picks_uncertain_functions(self):
        modules = [vault_module(), leaking_module()]
        selector = AnalysisSourceSelector(MadSettings(enabled=True))
        (plan,) = selector.plan_decompilation(modules, analyze_modules(modules))
        assert plan.module_id == "0xcafe::vault"
        assert plan.source == AnalysisSource.DECOMPILE
        assert sorted(plan.functions) == ["balance", "balance_mut"]

    def test_selective_skips_certain_leaks(self):
        module = bytecode_module(returns=MutableReference(Struct("0xcafe::vault", "Vault")))
        selector = AnalysisSourceSelector(MadSettings(enabled=True))
        assert selector.plan_decompilation([module], analyze_modules([module])) == []

    def test_non_selective_picks_every_bodyless_function(self):
        module = bytecode_module(returns=MutableReference(Struct("0xcafe::vault", "Vault")))
        selector = AnalysisSourceSelector(MadSettings(enabled=True, selective_decompilation=False))
        (plan,) = selector.plan_decompilation([module], analyze_modules([module]))
        assert plan.functions == ["balance"]

    def test_module_without_bytecode_is_skipped(self):
        module = vault_module()
        module.bytecode = None
        selector = AnalysisSourceSelector(MadSettings(enabled=True))
        assert selector.plan_decompilation([module], analyze_modules([module])) == []
