"""Tests for violation classification and certification merging."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from hydra.analyzer.classifier import (
    ClassifierPolicy,
    ModuleClassification,
    ViolationClassifier,
    aggregate,
    certify,
)
from hydra.analyzer.escape import analyze_modules
from hydra.analyzer.ir import Borrow, LoadField, LoadLocal, Return
from hydra.analyzer.model import (
    Function,
    Module,
    MutableReference,
    Primitive,
    Reference,
    Struct,
    Visibility,
    struct_table,
)
from hydra.core.types import CertificationState, Severity, Violation, ViolationKind
from hydra.tests.factories import bytecode_module, coin_struct, leaking_module
from hydra.verifier.oracle import LocalInvariantFailure, OracleVerdict

COIN = "0x1::coin"
COIN_T = Struct(COIN, "Coin")


def _classify(module: Module, structural_exposure: bool = False) -> ModuleClassification:
    escape = analyze_modules([module])
    classifier = ViolationClassifier(ClassifierPolicy(structural_exposure=structural_exposure))
    return classifier.classify_module(module, escape, struct_table([module]))


def _reader_module() -> Module:
    module = Module(COIN)
    module.add_struct(coin_struct())
    module.add_function(Function(
        module_id=COIN,
        name="value",
        visibility=Visibility.PUBLIC,
        parameters=[("c", Reference(COIN_T))],
        declared_return=Reference(Primitive("u64")),
        body=[LoadField("%r", "c", "Coin", "value", Borrow.IMMUTABLE), Return("%r")],
    ))
    module.add_function(Function(
        module_id=COIN,
        name="inner",
        visibility=Visibility.PUBLIC,
        parameters=[("c", Reference(COIN_T))],
        declared_return=Reference(COIN_T),
        body=[LoadLocal("%r", "c"), Return("%r")],
    ))
    return module


class TestHydra001:
    def test_direct_leak_is_critical(self):
        result = _classify(leaking_module())
        assert len(result.violations) == 1
        v = result.violations[0]
        assert v.kind == ViolationKind.HYDRA001
        assert v.severity == Severity.CRITICAL
        assert v.function == "value_mut"
        assert v.confidence == 1.0
        assert v.metadata["abstract_value"] == "INV_REF"
        assert result.blocking == [v]

    def test_conservative_verdict_is_warning(self):
        result = _classify(bytecode_module())
        v = result.violations[0]
        assert v.severity == Severity.WARNING
        assert v.confidence == 0.0
        assert v.metadata["uncertain"] is True
        assert "conservative" in v.message
        assert result.confidence == 0.0

    def test_private_functions_are_not_reported(self):
        module = leaking_module()
        module.functions["value_mut"].visibility = Visibility.PRIVATE
        result = _classify(module)
        assert result.violations == []
        assert result.confidence == 1.0

    def test_friend_functions_are_reported(self):
        module = leaking_module()
        module.functions["value_mut"].visibility = Visibility.FRIEND
        assert len(_classify(module).violations) == 1

    def test_read_only_access_is_clean(self):
        assert _classify(_reader_module()).violations == []


class TestHydra003:
    def test_disabled_by_default(self):
        assert _classify(_reader_module()).violations == []

    def test_internal_representation_exposed(self):
        result = _classify(_reader_module(), structural_exposure=True)
        assert [v.function for v in result.violations] == ["inner"]
        v = result.violations[0]
        assert v.kind == ViolationKind.HYDRA003
        assert v.severity == Severity.WARNING
        assert result.blocking == [v]

    def test_independent_of_hydra001(self):
        module = _reader_module()
        module.add_function(leaking_module().functions["value_mut"])
        kinds = sorted(v.kind.value for v in _classify(module, structural_exposure=True).violations)
        assert kinds == ["HYDRA001", "HYDRA003"]


class TestCertify:
    def test_clean_module_with_passing_oracle_is_certified(self):
        classification = _classify(_reader_module())
        report = certify(classification, OracleVerdict.ok(COIN))
        assert report.certification_state == CertificationState.CERTIFIED
        assert report.violations == ()

    def test_blocking_violation_wins_over_missing_verdict(self):
        report = certify(_classify(leaking_module()), None)
        assert report.certification_state == CertificationState.VIOLATED

    def test_missing_verdict_is_indeterminate(self):
        report = certify(_classify(_reader_module()), None)
        assert report.certification_state == CertificationState.INDETERMINATE
        assert "invariant oracle verdict unavailable" in report.diagnostics

    def test_oracle_failures_merged_verbatim(self):
        verdict = OracleVerdict.failed(COIN, [
            LocalInvariantFailure("total_supply_matches", function="mint", message="supply drift"),
        ])
        report = certify(_classify(_reader_module()), verdict)
        assert report.certification_state == CertificationState.VIOLATED
        (v,) = report.violations
        assert v.kind == ViolationKind.HYDRA002
        assert v.message == "supply drift"
        assert v.metadata == {"invariant": "total_supply_matches"}

    def test_decompiled_flag_carried(self):
        report = certify(_classify(_reader_module()), OracleVerdict.ok(COIN), decompiled=True)
        assert report.decompiled


class TestAggregate:
    def test_summary_is_derived(self):
        reports = [
            certify(_classify(leaking_module()), OracleVerdict.ok(COIN)),
            certify(_classify(_reader_module()), OracleVerdict.ok(COIN)),
            certify(_classify(bytecode_module()), None),
        ]
        batch = aggregate(reports, min_confidence=0.5)
        s = batch.summary
        assert s.total_modules == 3
        assert s.certified_modules == 1
        assert s.total_violations == 2
        assert s.critical_violations == 1
        assert s.low_confidence_modules == 1
        assert abs(s.certification_rate - 1 / 3) < 1e-9

    def test_empty_batch(self):
        batch = aggregate([])
        assert batch.summary.total_modules == 0
        assert batch.summary.certification_rate == 0.0


def test_violation_is_immutable():
    v = Violation(kind=ViolationKind.HYDRA001, module_id=COIN, function="f", severity=Severity.WARNING)
    with pytest.raises(ValidationError):
        v.function = "g"  # type: ignore[misc]


def test_mutable_reference_return_through_parameter():
    module = Module(COIN)
    module.add_struct(coin_struct())
    module.add_function(Function(
        module_id=COIN,
        name="borrow",
        visibility=Visibility.PUBLIC,
        parameters=[("c", MutableReference(COIN_T))],
        declared_return=MutableReference(COIN_T),
        body=[LoadLocal("%r", "c"), Return("%r")],
    ))
    (v,) = _classify(module).violations
    assert v.severity == Severity.CRITICAL
