"""Type/reference model: the abstract domain and the module data model.

The abstract domain classifies a value by how dangerous it is to hand to
code outside the module that owns it::

    NonRef  <  OkRef  <  InvRef

``absty`` maps a declared type to its abstract value relative to the module
under analysis. A mutable reference is only ``InvRef`` when it can reach a
struct whose representation belongs to that module.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Mapping, Union

from hydra.core.errors import MalformedType
from hydra.core.types import CertificationState, Location

if TYPE_CHECKING:
    from hydra.analyzer.ir import Op


# ── Abstract domain ──────────────────────────────────────────────────────────


class AbstractValue(enum.IntEnum):
    """Three-valued lattice, ordered by danger of exposure."""

    NON_REF = 0
    OK_REF = 1
    INV_REF = 2

    def join(self, other: "AbstractValue") -> "AbstractValue":
        return self if self >= other else other


def join_all(values: Iterable[AbstractValue]) -> AbstractValue:
    result = AbstractValue.NON_REF
    for value in values:
        result = result.join(value)
    return result


# ── Type signatures ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Primitive:
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Struct:
    module_id: str
    name: str
    is_internal: bool = True
    type_args: tuple["TypeSignature", ...] = ()

    def __str__(self) -> str:
        if self.module_id == TUPLE_MODULE:
            return f"({', '.join(str(a) for a in self.type_args)})"
        args = f"<{', '.join(str(a) for a in self.type_args)}>" if self.type_args else ""
        return f"{self.module_id}::{self.name}{args}"


@dataclass(frozen=True)
class Reference:
    inner: "TypeSignature"

    def __str__(self) -> str:
        return f"&{self.inner}"


@dataclass(frozen=True)
class MutableReference:
    inner: "TypeSignature"

    def __str__(self) -> str:
        return f"&mut {self.inner}"


@dataclass(frozen=True)
class Unresolved:
    """A signature the frontend could not parse or resolve."""
    text: str
    reason: str = ""

    def __str__(self) -> str:
        return f"<unresolved {self.text}>"


TypeSignature = Union[Primitive, Struct, Reference, MutableReference, Unresolved]

PRIMITIVES = frozenset({
    "bool", "u8", "u16", "u32", "u64", "u128", "u256", "address", "signer",
})
VECTOR_MODULE = "0x1::vector"
TUPLE_MODULE = ""  # multiple return values are modelled as an anonymous struct
UNIT = Primitive("()")


def is_tuple(t: TypeSignature) -> bool:
    return isinstance(t, Struct) and t.module_id == TUPLE_MODULE


def tuple_of(items: Iterable[TypeSignature]) -> Struct:
    return Struct(TUPLE_MODULE, "tuple", False, tuple(items))


def is_reference(t: TypeSignature) -> bool:
    if is_tuple(t):
        return any(is_reference(item) for item in t.type_args)
    return isinstance(t, (Reference, MutableReference))


def underlying(t: TypeSignature) -> TypeSignature:
    """Strip reference layers."""
    while isinstance(t, (Reference, MutableReference)):
        t = t.inner
    return t


# ── Declarations ─────────────────────────────────────────────────────────────


class Visibility(str, enum.Enum):
    PUBLIC = "public"
    FRIEND = "friend"
    PRIVATE = "private"

    @property
    def externally_visible(self) -> bool:
        return self is not Visibility.PRIVATE


class ModuleOrigin(str, enum.Enum):
    SOURCE_AVAILABLE = "source_available"
    BYTECODE_ONLY = "bytecode_only"


class BodyOrigin(str, enum.Enum):
    SOURCE = "source"
    DECOMPILED = "decompiled"
    MISSING = "missing"


@dataclass(frozen=True)
class FunctionId:
    module_id: str
    name: str

    def __str__(self) -> str:
        return f"{self.module_id}::{self.name}"


@dataclass
class StructDef:
    """A struct declaration with its field layout."""
    module_id: str
    name: str
    is_internal: bool = True
    fields: list[tuple[str, TypeSignature]] = field(default_factory=list)
    abilities: frozenset[str] = frozenset()
    line: int = 0

    def field_type(self, name: str) -> TypeSignature | None:
        for fname, ftype in self.fields:
            if fname == name:
                return ftype
        return None

    def as_type(self) -> Struct:
        return Struct(self.module_id, self.name, self.is_internal)


@dataclass
class Function:
    """A function and its mutable analysis state."""
    module_id: str
    name: str
    visibility: Visibility = Visibility.PRIVATE
    parameters: list[tuple[str, TypeSignature]] = field(default_factory=list)
    declared_return: TypeSignature = UNIT
    body: list[Op] | None = None
    body_origin: BodyOrigin = BodyOrigin.MISSING
    location: Location = field(default_factory=Location)
    # Analysis state
    resolved_abstract_value: AbstractValue = AbstractValue.NON_REF
    confidence: float = 1.0
    uncertain: bool = False
    diagnostics: list[str] = field(default_factory=list)

    @property
    def id(self) -> FunctionId:
        return FunctionId(self.module_id, self.name)

    @property
    def has_body(self) -> bool:
        return self.body is not None

    def reset(self) -> None:
        """Clear fixpoint state before a fresh analysis pass."""
        self.resolved_abstract_value = AbstractValue.NON_REF
        self.uncertain = False
        self.diagnostics = []


@dataclass
class Module:
    """A module and its certification state."""
    module_id: str
    functions: dict[str, Function] = field(default_factory=dict)
    structs: dict[str, StructDef] = field(default_factory=dict)
    dependencies: set[str] = field(default_factory=set)
    origin: ModuleOrigin = ModuleOrigin.SOURCE_AVAILABLE
    bytecode: bytes | None = None
    source_path: str = ""
    certification_state: CertificationState = CertificationState.PENDING
    diagnostics: list[str] = field(default_factory=list)

    def add_function(self, func: Function) -> None:
        self.functions[func.name] = func

    def add_struct(self, struct: StructDef) -> None:
        self.structs[struct.name] = struct

    @property
    def visible_functions(self) -> list[Function]:
        return [f for f in self.functions.values() if f.visibility.externally_visible]


StructTable = Mapping[tuple[str, str], StructDef]


def struct_table(modules: Iterable[Module]) -> dict[tuple[str, str], StructDef]:
    """Index every struct declaration in a batch by (module_id, name)."""
    table: dict[tuple[str, str], StructDef] = {}
    for module in modules:
        for struct in module.structs.values():
            table[(module.module_id, struct.name)] = struct
    return table


# ── absty ────────────────────────────────────────────────────────────────────


class TypeContext:
    """Evaluates ``absty`` relative to one analyzed module."""

    def __init__(
        self,
        module_id: str,
        structs: StructTable,
        diagnostics: list[str] | None = None,
    ) -> None:
        self.module_id = module_id
        self.structs = structs
        self.diagnostics = diagnostics if diagnostics is not None else []

    def absty(self, t: TypeSignature) -> AbstractValue:
        try:
            if isinstance(t, Primitive):
                return AbstractValue.NON_REF
            if is_tuple(t):
                return join_all(self.absty(item) for item in t.type_args)
            if isinstance(t, Struct):
                self.reaches_internal(t)  # validates the declaration
                return AbstractValue.NON_REF
            if isinstance(t, Reference):
                self.reaches_internal(t.inner)
                return AbstractValue.OK_REF
            if isinstance(t, MutableReference):
                if self.reaches_internal(t.inner):
                    return AbstractValue.INV_REF
                return AbstractValue.OK_REF
            if isinstance(t, Unresolved):
                raise MalformedType(f"unresolved type {t.text!r}: {t.reason}")
            raise MalformedType(f"unrecognized type signature {t!r}")
        except MalformedType as exc:
            self.diagnostics.append(exc.to_diagnostic())
            return AbstractValue.INV_REF

    def reaches_internal(self, t: TypeSignature, _seen: frozenset[tuple[str, str]] = frozenset()) -> bool:
        """True if ``t`` contains a struct internal to the analyzed module.

        Follows field declarations and generic arguments transitively.
        Raises MalformedType for a struct claimed by the analyzed module but
        not declared there.
        """
        if isinstance(t, Primitive):
            return False
        if isinstance(t, (Reference, MutableReference)):
            return self.reaches_internal(t.inner, _seen)
        if isinstance(t, Unresolved):
            raise MalformedType(f"unresolved type {t.text!r}: {t.reason}")
        if not isinstance(t, Struct):
            raise MalformedType(f"unrecognized type signature {t!r}")

        key = (t.module_id, t.name)
        decl = self.structs.get(key)
        if decl is None and t.module_id == self.module_id:
            raise MalformedType(f"struct {t} is not declared in {self.module_id}")

        if any(self.reaches_internal(arg, _seen) for arg in t.type_args):
            return True
        if t.module_id == self.module_id and t.is_internal:
            return True
        if key in _seen:
            return False
        if decl is None:
            # Foreign struct outside the batch: only its type arguments are visible
            return False
        if decl.module_id == self.module_id and decl.is_internal:
            return True
        return any(
            self.reaches_internal(ftype, _seen | {key})
            for _, ftype in decl.fields
        )


def absty(t: TypeSignature, ctx: TypeContext) -> AbstractValue:
    """Abstract value of a declared type, relative to ``ctx.module_id``."""
    return ctx.absty(t)


# ── Type parsing ─────────────────────────────────────────────────────────────

_TOKEN_RE = re.compile(r"\s*(&mut\b|&|::|<|>|,|\(\)|\(|\)|[A-Za-z_][A-Za-z0-9_]*|0x[0-9a-fA-F]+|\d+)")


def _tokenize(text: str) -> list[str]:
    tokens: list[str] = []
    pos = 0
    text = text.strip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise MalformedType(f"unexpected character in type {text!r} at {pos}")
        tokens.append(m.group(1))
        pos = m.end()
    return tokens


class TypeParser:
    """Parse Move type syntax into TypeSignature values.

    ``aliases`` maps short module names brought in by ``use`` to full module
    ids; ``local_structs`` resolves unqualified names against the enclosing
    module; ``type_params`` are the enclosing function's generic parameters.
    """

    def __init__(
        self,
        module_id: str,
        local_structs: Mapping[str, StructDef] | None = None,
        aliases: Mapping[str, str] | None = None,
        type_params: Iterable[str] = (),
        known_structs: StructTable | None = None,
    ) -> None:
        self.module_id = module_id
        self.local_structs = local_structs or {}
        self.aliases = aliases or {}
        self.type_params = set(type_params)
        self.known_structs = known_structs or {}

    def parse(self, text: str) -> TypeSignature:
        tokens = _tokenize(text)
        if not tokens:
            raise MalformedType("empty type signature")
        t, pos = self._parse(tokens, 0)
        if pos != len(tokens):
            raise MalformedType(f"trailing tokens in type {text!r}")
        return t

    def parse_lenient(self, text: str) -> TypeSignature:
        """Like ``parse`` but degrades failures to ``Unresolved``."""
        try:
            return self.parse(text)
        except MalformedType as exc:
            return Unresolved(text.strip(), exc.message)

    def _parse(self, tokens: list[str], pos: int) -> tuple[TypeSignature, int]:
        if pos >= len(tokens):
            raise MalformedType("unexpected end of type signature")
        tok = tokens[pos]
        if tok == "&mut":
            inner, pos = self._parse(tokens, pos + 1)
            return MutableReference(inner), pos
        if tok == "&":
            inner, pos = self._parse(tokens, pos + 1)
            return Reference(inner), pos
        if tok == "()":
            return UNIT, pos + 1
        if tok == "(":
            items: list[TypeSignature] = []
            pos += 1
            while True:
                item, pos = self._parse(tokens, pos)
                items.append(item)
                if pos < len(tokens) and tokens[pos] == ",":
                    pos += 1
                    continue
                if pos < len(tokens) and tokens[pos] == ")":
                    pos += 1
                    break
                raise MalformedType("unterminated tuple type")
            return (items[0] if len(items) == 1 else tuple_of(items)), pos

        path = [tok]
        pos += 1
        while pos + 1 < len(tokens) and tokens[pos] == "::":
            path.append(tokens[pos + 1])
            pos += 2

        args: list[TypeSignature] = []
        if pos < len(tokens) and tokens[pos] == "<":
            pos += 1
            while True:
                arg, pos = self._parse(tokens, pos)
                args.append(arg)
                if pos < len(tokens) and tokens[pos] == ",":
                    pos += 1
                    continue
                if pos < len(tokens) and tokens[pos] == ">":
                    pos += 1
                    break
                raise MalformedType("unterminated type argument list")

        return self._resolve(path, tuple(args)), pos

    def _resolve(self, path: list[str], args: tuple[TypeSignature, ...]) -> TypeSignature:
        name = path[-1]
        if len(path) == 1:
            if name in PRIMITIVES and not args:
                return Primitive(name)
            if name in self.type_params and not args:
                return Primitive(name)
            if name == "vector":
                if len(args) != 1:
                    raise MalformedType("vector expects exactly one type argument")
                return Struct(VECTOR_MODULE, "vector", False, args)
            decl = self.local_structs.get(name)
            if decl is not None:
                return Struct(self.module_id, name, decl.is_internal, args)
            if name in self.aliases:
                module_id, _, struct_name = self.aliases[name].rpartition("::")
                return self._foreign(module_id, struct_name, args)
            raise MalformedType(f"unresolved type name {name!r} in {self.module_id}")

        module_path = path[:-1]
        if len(module_path) == 1:
            module_id = self.aliases.get(module_path[0], module_path[0])
        else:
            module_id = "::".join(module_path)
        return self._foreign(module_id, name, args)

    def _foreign(self, module_id: str, name: str, args: tuple[TypeSignature, ...]) -> Struct:
        if module_id == self.module_id:
            decl = self.local_structs.get(name)
        else:
            decl = self.known_structs.get((module_id, name))
        is_internal = decl.is_internal if decl is not None else True
        return Struct(module_id, name, is_internal, args)


def parse_type(
    text: str,
    module_id: str,
    local_structs: Mapping[str, StructDef] | None = None,
    aliases: Mapping[str, str] | None = None,
    type_params: Iterable[str] = (),
) -> TypeSignature:
    """Convenience wrapper around TypeParser."""
    return TypeParser(module_id, local_structs, aliases, type_params).parse(text)
