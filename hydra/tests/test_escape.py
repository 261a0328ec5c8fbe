"""Tests for the intra- and interprocedural escape analysis."""

from __future__ import annotations

from hydra.analyzer.escape import EscapeAnalysisEngine, MissingBodyPolicy, analyze_modules
from hydra.analyzer.ir import (
    Borrow,
    Branch,
    Call,
    Const,
    LoadField,
    LoadLocal,
    Loop,
    Return,
    Typed,
)
from hydra.analyzer.model import (
    AbstractValue,
    Function,
    FunctionId,
    Module,
    MutableReference,
    Primitive,
    Reference,
    Struct,
    Unresolved,
    Visibility,
)
from hydra.core.call_graph import CallGraphBuilder
from hydra.tests.factories import bytecode_module, coin_struct, leaking_module

COIN = "0x1::coin"
COIN_T = Struct(COIN, "Coin")


def _coin_module(*functions: Function) -> Module:
    module = Module(COIN)
    module.add_struct(coin_struct())
    for f in functions:
        module.add_function(f)
    return module


def _fn(name, body, params=None, returns=None, visibility=Visibility.PUBLIC, module_id=COIN):
    return Function(
        module_id=module_id,
        name=name,
        visibility=visibility,
        parameters=params if params is not None else [("c", MutableReference(COIN_T))],
        declared_return=returns if returns is not None else MutableReference(Primitive("u64")),
        body=body,
    )


class TestIntraprocedural:
    def test_mutable_field_borrow_escapes(self):
        result = analyze_modules([leaking_module()])
        assert result.values[FunctionId(COIN, "value_mut")] == AbstractValue.INV_REF

    def test_immutable_field_borrow_is_ok_ref(self):
        body = [LoadField("%r", "c", "Coin", "value", Borrow.IMMUTABLE), Return("%r")]
        module = _coin_module(_fn("value", body, [("c", Reference(COIN_T))], Reference(Primitive("u64"))))
        result = analyze_modules([module])
        assert result.values[FunctionId(COIN, "value")] == AbstractValue.OK_REF

    def test_field_copy_is_non_ref(self):
        body = [LoadField("%r", "c", "Coin", "value"), Return("%r")]
        module = _coin_module(_fn("balance", body, [("c", Reference(COIN_T))], Primitive("u64")))
        assert analyze_modules([module]).values[FunctionId(COIN, "balance")] == AbstractValue.NON_REF

    def test_returning_mutable_parameter_of_internal_type(self):
        module = _coin_module(_fn("id", [LoadLocal("%r", "c"), Return("%r")], returns=MutableReference(COIN_T)))
        assert analyze_modules([module]).values[FunctionId(COIN, "id")] == AbstractValue.INV_REF

    def test_branches_join(self):
        body = [
            Branch((
                (LoadField("%r", "c", "Coin", "value", Borrow.MUTABLE),),
                (Const("%r"),),
            )),
            Return("%r"),
        ]
        module = _coin_module(_fn("maybe", body))
        assert analyze_modules([module]).values[FunctionId(COIN, "maybe")] == AbstractValue.INV_REF

    def test_loop_carried_value_rises(self):
        body = [
            Const("%acc"),
            Const("%next"),
            Loop((
                LoadLocal("%prev", "%next"),
                LoadField("%next", "c", "Coin", "value", Borrow.MUTABLE),
                LoadLocal("%acc", "%prev"),
            )),
            Return("%acc"),
        ]
        module = _coin_module(_fn("looped", body))
        result = analyze_modules([module])
        assert result.values[FunctionId(COIN, "looped")] == AbstractValue.INV_REF

    def test_typed_global_borrow(self):
        body = [Typed("%r", MutableReference(COIN_T)), Return("%r")]
        module = _coin_module(_fn("global", body, [], MutableReference(COIN_T)))
        assert analyze_modules([module]).values[FunctionId(COIN, "global")] == AbstractValue.INV_REF

    def test_undefined_local_is_conservative(self):
        module = _coin_module(_fn("broken", [Return("%ghost")], returns=Primitive("u64")))
        result = analyze_modules([module])
        fid = FunctionId(COIN, "broken")
        assert result.values[fid] == AbstractValue.INV_REF
        assert any("undefined local" in d for d in result.diagnostics[fid])

    def test_unknown_field_is_conservative(self):
        body = [LoadField("%r", "c", "Coin", "nope"), Return("%r")]
        module = _coin_module(_fn("bad", body, returns=Primitive("u64")))
        result = analyze_modules([module])
        fid = FunctionId(COIN, "bad")
        assert result.values[fid] == AbstractValue.INV_REF
        assert any("MALFORMED_TYPE" in d for d in result.diagnostics[fid])

    def test_unresolved_return_overrides_safe_body(self):
        body = [Const("%r"), Return("%r")]
        module = _coin_module(_fn("mystery", body, [], Unresolved("Mystery", "unknown name")))
        result = analyze_modules([module])
        fid = FunctionId(COIN, "mystery")
        assert result.values[fid] == AbstractValue.INV_REF
        assert fid not in result.uncertain
        assert any("unresolved type 'Mystery'" in d for d in result.diagnostics[fid])

    def test_undeclared_return_struct_overrides_safe_body(self):
        body = [Const("%r"), Return("%r")]
        module = _coin_module(_fn("ghost", body, [], Struct(COIN, "Ghost")))
        result = analyze_modules([module])
        assert result.values[FunctionId(COIN, "ghost")] == AbstractValue.INV_REF


class TestInterprocedural:
    def test_value_flows_through_calls_across_modules(self):
        wrapper = _fn(
            "forward",
            [LoadLocal("%c", "c"), Call("%r", FunctionId(COIN, "value_mut"), ("%c",)), Return("%r")],
            params=[("c", MutableReference(COIN_T))],
            module_id="0x2::user",
        )
        user = Module("0x2::user")
        user.add_function(wrapper)
        result = analyze_modules([leaking_module(), user])
        assert result.values[FunctionId("0x2::user", "forward")] == AbstractValue.INV_REF

    def test_safe_callee_keeps_caller_safe(self):
        getter = _fn(
            "balance",
            [LoadField("%r", "c", "Coin", "value"), Return("%r")],
            params=[("c", Reference(COIN_T))],
            returns=Primitive("u64"),
        )
        caller = _fn(
            "total",
            [Call("%r", FunctionId(COIN, "balance"), ("c",)), Return("%r")],
            params=[("c", Reference(COIN_T))],
            returns=Primitive("u64"),
        )
        result = analyze_modules([_coin_module(getter, caller)])
        assert result.values[FunctionId(COIN, "total")] == AbstractValue.NON_REF

    def test_inv_ref_argument_through_reference_returning_callee(self):
        ident = _fn(
            "pass",
            [LoadLocal("%r", "x"), Return("%r")],
            params=[("x", MutableReference(Primitive("u64")))],
            visibility=Visibility.PRIVATE,
        )
        caller = _fn(
            "leak",
            [
                LoadField("%f", "c", "Coin", "value", Borrow.MUTABLE),
                Call("%r", FunctionId(COIN, "pass"), ("%f",)),
                Return("%r"),
            ],
        )
        result = analyze_modules([_coin_module(ident, caller)])
        assert result.values[FunctionId(COIN, "pass")] == AbstractValue.OK_REF
        assert result.values[FunctionId(COIN, "leak")] == AbstractValue.INV_REF

    def test_cycle_converges(self):
        f = _fn(
            "f",
            [
                Branch((
                    (Call("%r", FunctionId(COIN, "g"), ("c",)),),
                    (LoadField("%r", "c", "Coin", "value", Borrow.MUTABLE),),
                )),
                Return("%r"),
            ],
        )
        g = _fn("g", [Call("%r", FunctionId(COIN, "f"), ("c",)), Return("%r")], visibility=Visibility.PRIVATE)
        engine = EscapeAnalysisEngine([_coin_module(f, g)])
        assert engine.graph.has_cycles
        result = engine.run()
        assert result.values[FunctionId(COIN, "f")] == AbstractValue.INV_REF
        assert result.values[FunctionId(COIN, "g")] == AbstractValue.INV_REF

    def test_updates_are_monotone_and_bounded(self):
        chain = [
            _fn(
                f"hop{i}",
                [Call("%r", FunctionId(COIN, f"hop{i + 1}"), ("c",)), Return("%r")],
            )
            for i in range(5)
        ]
        last = _fn("hop5", [LoadField("%r", "c", "Coin", "value", Borrow.MUTABLE), Return("%r")])
        module = _coin_module(*chain, last)
        result = analyze_modules([module])

        assert all(u.new > u.old for u in result.updates)
        assert len(result.updates) <= 2 * len(result.graph)
        per_function: dict[FunctionId, int] = {}
        for update in result.updates:
            per_function[update.function] = per_function.get(update.function, 0) + 1
        assert max(per_function.values()) <= 2
        assert all(v == AbstractValue.INV_REF for v in result.values.values())

    def test_result_written_back_onto_functions(self):
        module = leaking_module()
        analyze_modules([module])
        func = module.functions["value_mut"]
        assert func.resolved_abstract_value == AbstractValue.INV_REF
        assert not func.uncertain


class TestMissingBodies:
    def test_bodyless_function_is_pessimistic(self):
        module = bytecode_module()
        result = analyze_modules([module])
        fid = FunctionId("0xcafe::vault", "balance")
        assert result.values[fid] == AbstractValue.INV_REF
        assert result.optimistic[fid] == AbstractValue.NON_REF
        assert fid in result.uncertain
        assert result.confidence[fid] == 0.0
        assert module.functions["balance"].uncertain

    def test_bodyless_reference_returner_is_not_uncertain(self):
        vault = Struct("0xcafe::vault", "Vault")
        module = bytecode_module(returns=MutableReference(vault))
        result = analyze_modules([module])
        fid = FunctionId("0xcafe::vault", "balance")
        assert result.values[fid] == AbstractValue.INV_REF
        assert result.optimistic[fid] == AbstractValue.INV_REF
        assert fid not in result.uncertain

    def test_solve_policies_differ_only_on_missing_bodies(self):
        engine = EscapeAnalysisEngine([bytecode_module(), leaking_module()])
        pessimistic = engine.solve(MissingBodyPolicy.PESSIMISTIC)
        optimistic = engine.solve(MissingBodyPolicy.OPTIMISTIC)
        idx = engine.graph.index[FunctionId(COIN, "value_mut")]
        assert pessimistic.values[idx] == optimistic.values[idx] == AbstractValue.INV_REF

    def test_uncertainty_lowers_caller_confidence(self):
        vault_id = "0xcafe::vault"
        caller = Function(
            module_id="0x2::user",
            name="peek",
            visibility=Visibility.PUBLIC,
            parameters=[("v", Reference(Struct(vault_id, "Vault")))],
            declared_return=Primitive("u64"),
            body=[Call("%r", FunctionId(vault_id, "balance"), ("v",)), Return("%r")],
        )
        user = Module("0x2::user")
        user.add_function(caller)
        result = analyze_modules([bytecode_module(), user])
        fid = FunctionId("0x2::user", "peek")
        assert fid in result.uncertain
        assert result.confidence[fid] == 0.0


class TestExternalCalls:
    def test_call_outside_batch_becomes_stub(self):
        outside = FunctionId("0x9::ext", "grab")
        func = _fn(
            "delegate",
            [Const("%x"), Call("%r", outside, ("%x",)), Return("%r")],
            returns=Primitive("u64"),
        )
        module = _coin_module(func)
        graph = CallGraphBuilder().build([module])
        assert outside in graph.external
        assert graph.is_external(graph.index[outside])

        result = analyze_modules([module])
        fid = FunctionId(COIN, "delegate")
        assert result.values[fid] == AbstractValue.INV_REF
        assert fid in result.uncertain
        assert any("outside the batch" in d for d in result.diagnostics[fid])
