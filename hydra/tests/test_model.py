"""Tests for the abstract domain, absty and Move type parsing."""

from __future__ import annotations

import pytest

from hydra.analyzer.model import (
    UNIT,
    AbstractValue,
    MutableReference,
    Primitive,
    Reference,
    Struct,
    StructDef,
    TypeContext,
    TypeParser,
    Unresolved,
    is_reference,
    is_tuple,
    join_all,
    parse_type,
    struct_table,
    tuple_of,
    underlying,
)
from hydra.analyzer.model import Module
from hydra.core.errors import MalformedType

COIN = "0x1::coin"


def _ctx(*structs: StructDef, module_id: str = COIN) -> TypeContext:
    module = Module(module_id)
    for s in structs:
        module.add_struct(s)
    return TypeContext(module_id, struct_table([module]))


class TestLattice:
    def test_order(self):
        assert AbstractValue.NON_REF < AbstractValue.OK_REF < AbstractValue.INV_REF

    def test_join_is_max(self):
        assert AbstractValue.NON_REF.join(AbstractValue.OK_REF) == AbstractValue.OK_REF
        assert AbstractValue.INV_REF.join(AbstractValue.OK_REF) == AbstractValue.INV_REF

    def test_join_all_empty_is_bottom(self):
        assert join_all([]) == AbstractValue.NON_REF


class TestAbsty:
    def test_primitive_is_non_ref(self):
        assert _ctx().absty(Primitive("u64")) == AbstractValue.NON_REF

    def test_immutable_reference_is_ok_ref(self):
        ctx = _ctx(StructDef(COIN, "Coin", True, [("value", Primitive("u64"))]))
        assert ctx.absty(Reference(Struct(COIN, "Coin"))) == AbstractValue.OK_REF

    def test_mutable_reference_to_internal_struct_is_inv_ref(self):
        ctx = _ctx(StructDef(COIN, "Coin", True, [("value", Primitive("u64"))]))
        assert ctx.absty(MutableReference(Struct(COIN, "Coin"))) == AbstractValue.INV_REF

    def test_mutable_reference_to_primitive_is_ok_ref(self):
        assert _ctx().absty(MutableReference(Primitive("u64"))) == AbstractValue.OK_REF

    def test_mutable_reference_to_foreign_struct_is_ok_ref(self):
        ctx = _ctx()
        assert ctx.absty(MutableReference(Struct("0x2::other", "Thing"))) == AbstractValue.OK_REF

    def test_internal_struct_reached_through_generic_argument(self):
        ctx = _ctx(StructDef(COIN, "Coin", True, [("value", Primitive("u64"))]))
        boxed = Struct("0x1::vector", "vector", False, (Struct(COIN, "Coin"),))
        assert ctx.absty(MutableReference(boxed)) == AbstractValue.INV_REF

    def test_internal_struct_reached_through_foreign_field(self):
        wrapper = StructDef("0x2::wrap", "Wrapper", False, [("inner", Struct(COIN, "Coin"))])
        coin = StructDef(COIN, "Coin", True, [("value", Primitive("u64"))])
        other = Module("0x2::wrap")
        other.add_struct(wrapper)
        mine = Module(COIN)
        mine.add_struct(coin)
        ctx = TypeContext(COIN, struct_table([mine, other]))
        assert ctx.absty(MutableReference(Struct("0x2::wrap", "Wrapper", False))) == AbstractValue.INV_REF

    def test_non_internal_local_struct_is_ok_ref(self):
        ctx = _ctx(StructDef(COIN, "Receipt", False, [("amount", Primitive("u64"))]))
        assert ctx.absty(MutableReference(Struct(COIN, "Receipt", False))) == AbstractValue.OK_REF

    def test_recursive_struct_terminates(self):
        node = StructDef("0x2::list", "Node", False, [("next", Struct("0x2::list", "Node", False))])
        other = Module("0x2::list")
        other.add_struct(node)
        ctx = TypeContext(COIN, struct_table([other]))
        assert ctx.absty(MutableReference(Struct("0x2::list", "Node", False))) == AbstractValue.OK_REF

    def test_unresolved_type_is_inv_ref_with_diagnostic(self):
        ctx = _ctx()
        assert ctx.absty(Unresolved("Mystery", "unknown")) == AbstractValue.INV_REF
        assert ctx.diagnostics and ctx.diagnostics[0].startswith("MALFORMED_TYPE")

    def test_undeclared_local_struct_is_inv_ref(self):
        ctx = _ctx()
        assert ctx.absty(Reference(Struct(COIN, "Ghost"))) == AbstractValue.INV_REF
        assert "not declared" in ctx.diagnostics[0]

    def test_tuple_joins_items(self):
        ctx = _ctx(StructDef(COIN, "Coin", True, [("value", Primitive("u64"))]))
        pair = tuple_of([Primitive("u64"), MutableReference(Struct(COIN, "Coin"))])
        assert ctx.absty(pair) == AbstractValue.INV_REF
        assert ctx.absty(tuple_of([Primitive("u64"), Primitive("bool")])) == AbstractValue.NON_REF


class TestTypeHelpers:
    def test_tuple_with_reference_counts_as_reference(self):
        assert is_reference(tuple_of([Primitive("u8"), Reference(Primitive("u64"))]))
        assert not is_reference(tuple_of([Primitive("u8"), Primitive("u64")]))

    def test_underlying_strips_all_layers(self):
        assert underlying(Reference(MutableReference(Primitive("u8")))) == Primitive("u8")

    def test_struct_str(self):
        assert str(Struct(COIN, "Coin")) == "0x1::coin::Coin"
        assert str(tuple_of([Primitive("u8"), Primitive("bool")])) == "(u8, bool)"


class TestTypeParser:
    @pytest.fixture
    def parser(self):
        locals_ = {"Coin": StructDef(COIN, "Coin", True)}
        return TypeParser(COIN, locals_, {"table": "0x1::table", "Table": "0x1::table::Table"}, ["T"])

    def test_primitives_and_references(self, parser):
        assert parser.parse("u64") == Primitive("u64")
        assert parser.parse("&mut u64") == MutableReference(Primitive("u64"))
        assert parser.parse("& Coin") == Reference(Struct(COIN, "Coin"))

    def test_unit(self, parser):
        assert parser.parse("()") == UNIT

    def test_tuple(self, parser):
        t = parser.parse("(u64, &Coin)")
        assert is_tuple(t)
        assert t.type_args == (Primitive("u64"), Reference(Struct(COIN, "Coin")))

    def test_parenthesized_single_type(self, parser):
        assert parser.parse("(u64)") == Primitive("u64")

    def test_vector(self, parser):
        t = parser.parse("vector<Coin>")
        assert t == Struct("0x1::vector", "vector", False, (Struct(COIN, "Coin"),))

    def test_type_parameter_is_opaque(self, parser):
        assert parser.parse("T") == Primitive("T")

    def test_module_alias(self, parser):
        t = parser.parse("table::Table<address, u64>")
        assert isinstance(t, Struct)
        assert t.module_id == "0x1::table"
        assert t.type_args == (Primitive("address"), Primitive("u64"))

    def test_member_alias(self, parser):
        assert parser.parse("Table<u8, u8>").module_id == "0x1::table"

    def test_fully_qualified(self, parser):
        t = parser.parse("0x2::pool::Pool")
        assert (t.module_id, t.name) == ("0x2::pool", "Pool")

    def test_unknown_name_raises(self, parser):
        with pytest.raises(MalformedType):
            parser.parse("Nope")

    def test_trailing_tokens_raise(self, parser):
        with pytest.raises(MalformedType):
            parser.parse("u64 u8")

    def test_lenient_parse_degrades(self, parser):
        t = parser.parse_lenient("vector<")
        assert isinstance(t, Unresolved)
        assert t.text == "vector<"

    def test_parse_type_helper(self):
        assert parse_type("&mut u8", COIN) == MutableReference(Primitive("u8"))
