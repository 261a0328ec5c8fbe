"""Abstract function bodies.

A body is a list of operations over named registers. It keeps only what the
escape analysis needs: where values come from, how fields are borrowed, which
functions are called, where control flow merges and what is returned.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterator, Union

from hydra.analyzer.model import FunctionId, TypeSignature


class Borrow(str, enum.Enum):
    NONE = "none"            # copy / move of the field value
    IMMUTABLE = "immutable"  # &s.f
    MUTABLE = "mutable"      # &mut s.f


@dataclass(frozen=True)
class Const:
    """dest := literal (never a reference)."""
    dest: str


@dataclass(frozen=True)
class LoadLocal:
    """dest := source"""
    dest: str
    source: str


@dataclass(frozen=True)
class LoadField:
    """dest := base.field, with an optional borrow."""
    dest: str
    base: str
    struct: str
    field: str
    borrow: Borrow = Borrow.NONE
    struct_module: str = ""  # defaults to the enclosing module


@dataclass(frozen=True)
class Typed:
    """dest := some value of type ``ty`` (builtins, natives, borrows of locals)."""
    dest: str
    ty: TypeSignature


@dataclass(frozen=True)
class Call:
    """dest := callee(args...)"""
    dest: str
    callee: FunctionId
    args: tuple[str, ...] = ()


@dataclass(frozen=True)
class Pack:
    """dest := Struct { .. } (a value, not a reference)."""
    dest: str
    struct: str


@dataclass(frozen=True)
class Branch:
    """Alternative arms whose environments merge by join afterwards."""
    arms: tuple[tuple["Op", ...], ...] = ()


@dataclass(frozen=True)
class Loop:
    """A body executed zero or more times."""
    body: tuple["Op", ...] = ()


@dataclass(frozen=True)
class Return:
    source: str | None = None


Op = Union[Const, LoadLocal, LoadField, Typed, Call, Pack, Branch, Loop, Return]


@dataclass
class BodyBuilder:
    """Small helper for building bodies by hand (frontends and tests)."""
    ops: list[Op] = field(default_factory=list)
    _counter: int = 0

    def temp(self) -> str:
        self._counter += 1
        return f"%t{self._counter}"

    def emit(self, op: Op) -> None:
        self.ops.append(op)

    def build(self) -> list[Op]:
        return list(self.ops)


def iter_calls(ops: list[Op] | tuple[Op, ...]) -> Iterator[Call]:
    """Yield every Call in a body, including nested arms and loops."""
    for op in ops:
        if isinstance(op, Call):
            yield op
        elif isinstance(op, Branch):
            for arm in op.arms:
                yield from iter_calls(arm)
        elif isinstance(op, Loop):
            yield from iter_calls(op.body)
