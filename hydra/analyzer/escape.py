"""Escape analysis (Ξimm): which abstract values can a function hand out?

Two layers:

1. **Intraprocedural** — ``BodyInterpreter`` walks a function's abstract body
   (``hydra.analyzer.ir``) with an environment of register → AbstractValue and
   joins every returned value.

2. **Interprocedural** — ``EscapeAnalysisEngine`` resolves all functions of a
   batch together with Kleene iteration over the call graph. Every function
   starts at NonRef; a worklist re-evaluates callers whenever a callee's value
   rises. The lattice has height 3 and evaluation is monotone, so each
   function changes at most twice and the run performs at most
   ``2 × |functions|`` updates, with or without call cycles.

Functions without a body contribute InvRef with confidence 0. A second,
optimistic run in which missing bodies contribute the value implied by their
declared return type tells which InvRef verdicts exist *only* because a body
was missing; those functions are marked ``uncertain`` and are the candidates
for selective decompilation.
"""

from __future__ import annotations

import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable

from hydra.analyzer.ir import (
    Borrow,
    Branch,
    Call,
    Const,
    LoadField,
    LoadLocal,
    Loop,
    Op,
    Pack,
    Return,
    Typed,
)
from hydra.analyzer.model import (
    AbstractValue,
    Function,
    FunctionId,
    Module,
    MutableReference,
    Reference,
    StructTable,
    TypeContext,
    Unresolved,
    is_reference,
    join_all,
    struct_table,
)
from hydra.core.call_graph import CallGraph, CallGraphBuilder
from hydra.core.errors import MalformedType

logger = logging.getLogger(__name__)

Env = dict[str, AbstractValue]


class MissingBodyPolicy(enum.Enum):
    """What a function without a body contributes."""
    PESSIMISTIC = "pessimistic"  # InvRef, the sound default
    OPTIMISTIC = "optimistic"    # absty(declared_return)


# ── Intraprocedural ──────────────────────────────────────────────────────────


class BodyInterpreter:
    """Abstract interpreter for a single function body."""

    def __init__(
        self,
        func: Function,
        graph: CallGraph,
        values: list[AbstractValue],
        structs: StructTable,
    ) -> None:
        self.func = func
        self.graph = graph
        self.values = values
        self.structs = structs
        self.ctx = TypeContext(func.module_id, structs)
        self._returns: list[AbstractValue] = []

    @property
    def diagnostics(self) -> list[str]:
        return self.ctx.diagnostics

    def run(self) -> AbstractValue:
        assert self.func.body is not None
        env: Env = {
            binding: self.ctx.absty(ptype) for binding, ptype in self.func.parameters
        }
        self._exec(self.func.body, env)
        return join_all(self._returns)

    # ------------------------------------------------------------------

    def _exec(self, ops: Iterable[Op], env: Env) -> Env:
        for op in ops:
            if isinstance(op, Const):
                env[op.dest] = AbstractValue.NON_REF
            elif isinstance(op, LoadLocal):
                env[op.dest] = self._read(env, op.source)
            elif isinstance(op, LoadField):
                env[op.dest] = self._load_field(op)
            elif isinstance(op, Typed):
                env[op.dest] = self.ctx.absty(op.ty)
            elif isinstance(op, Call):
                env[op.dest] = self._call(op, env)
            elif isinstance(op, Pack):
                env[op.dest] = AbstractValue.NON_REF
            elif isinstance(op, Branch):
                env = self._branch(op, env)
            elif isinstance(op, Loop):
                env = self._loop(op, env)
            elif isinstance(op, Return):
                value = self._read(env, op.source) if op.source is not None else AbstractValue.NON_REF
                self._returns.append(value)
            else:
                self.diagnostics.append(f"unknown operation {op!r}; assuming InvRef")
                self._returns.append(AbstractValue.INV_REF)
        return env

    def _read(self, env: Env, name: str) -> AbstractValue:
        value = env.get(name)
        if value is None:
            self.diagnostics.append(f"read of undefined local {name!r}; assuming InvRef")
            return AbstractValue.INV_REF
        return value

    def _load_field(self, op: LoadField) -> AbstractValue:
        module_id = op.struct_module or self.func.module_id
        decl = self.structs.get((module_id, op.struct))
        if decl is None:
            self.diagnostics.append(
                MalformedType(f"field access on unknown struct {module_id}::{op.struct}").to_diagnostic()
            )
            return AbstractValue.INV_REF
        ftype = decl.field_type(op.field)
        if ftype is None:
            self.diagnostics.append(
                MalformedType(f"struct {decl.name} has no field {op.field!r}").to_diagnostic()
            )
            return AbstractValue.INV_REF

        if op.borrow is Borrow.NONE:
            return self.ctx.absty(ftype)
        if op.borrow is Borrow.IMMUTABLE:
            return self.ctx.absty(Reference(ftype))
        value = self.ctx.absty(MutableReference(ftype))
        if decl.is_internal and decl.module_id == self.func.module_id:
            value = AbstractValue.INV_REF
        return value

    def _call(self, op: Call, env: Env) -> AbstractValue:
        callee_idx = self.graph.index.get(op.callee)
        if callee_idx is None:
            # Graph built from a different snapshot; treat as unknown code
            self.diagnostics.append(f"call to unknown function {op.callee}; assuming InvRef")
            return AbstractValue.INV_REF
        callee = self.graph.functions[callee_idx]
        result = self.values[callee_idx]

        args = [self._read(env, a) for a in op.args]
        if AbstractValue.INV_REF in args and self._returns_reference(callee_idx, callee):
            result = AbstractValue.INV_REF
        return result

    def _returns_reference(self, idx: int, callee: Function) -> bool:
        if self.graph.is_external(idx):
            return True  # signature unknown
        ret = callee.declared_return
        return is_reference(ret) or isinstance(ret, Unresolved)

    def _branch(self, op: Branch, env: Env) -> Env:
        if not op.arms:
            return env
        arm_envs = [self._exec(arm, dict(env)) for arm in op.arms]
        return _join_envs(arm_envs)

    def _loop(self, op: Loop, env: Env) -> Env:
        current = dict(env)
        # Each register can rise at most twice
        for _ in range(2 * (len(current) + _count_dests(op.body)) + 1):
            after = self._exec(op.body, dict(current))
            merged = _join_envs([current, after])
            if merged == current:
                break
            current = merged
        return current


def _join_envs(envs: list[Env]) -> Env:
    merged: Env = {}
    for env in envs:
        for name, value in env.items():
            prev = merged.get(name)
            merged[name] = value if prev is None else prev.join(value)
    return merged


def _count_dests(ops: Iterable[Op]) -> int:
    count = 0
    for op in ops:
        if isinstance(op, Branch):
            count += sum(_count_dests(arm) for arm in op.arms)
        elif isinstance(op, Loop):
            count += _count_dests(op.body)
        elif hasattr(op, "dest"):
            count += 1
    return count


# ── Interprocedural ──────────────────────────────────────────────────────────


@dataclass
class ValueUpdate:
    """One rise of a function's resolved value during the fixpoint."""
    function: FunctionId
    old: AbstractValue
    new: AbstractValue
    step: int


@dataclass
class FixpointRun:
    """Outcome of one fixpoint computation."""
    values: list[AbstractValue]
    updates: list[ValueUpdate] = field(default_factory=list)
    evaluations: int = 0


@dataclass
class EscapeResult:
    """Resolved escape-analysis state for a batch."""
    graph: CallGraph
    values: dict[FunctionId, AbstractValue]
    optimistic: dict[FunctionId, AbstractValue]
    uncertain: set[FunctionId]
    confidence: dict[FunctionId, float]
    diagnostics: dict[FunctionId, list[str]]
    updates: list[ValueUpdate] = field(default_factory=list)
    evaluations: int = 0

    def uncertain_visible(self, modules: Iterable[Module]) -> list[Function]:
        """Uncertain public / friend functions of the given modules."""
        result = []
        for module in modules:
            for func in module.visible_functions:
                if func.id in self.uncertain:
                    result.append(func)
        return result


class EscapeAnalysisEngine:
    """Interprocedural escape analysis over a batch of modules.

    Usage::

        engine = EscapeAnalysisEngine(modules)
        result = engine.run()
        result.values[FunctionId("0x1::coin", "value_mut")]  # AbstractValue.INV_REF
    """

    def __init__(self, modules: Iterable[Module]) -> None:
        self.modules = list(modules)
        self.structs = struct_table(self.modules)
        self.graph = CallGraphBuilder().build(self.modules)

    def run(self) -> EscapeResult:
        """Resolve every function and write the verdicts back onto them."""
        pessimistic = self.solve(MissingBodyPolicy.PESSIMISTIC)
        optimistic = self.solve(MissingBodyPolicy.OPTIMISTIC)
        graph = self.graph

        diagnostics = self._collect_diagnostics(pessimistic.values)
        uncertain = {
            f.id for i, f in enumerate(graph.functions)
            if pessimistic.values[i] == AbstractValue.INV_REF
            and optimistic.values[i] != AbstractValue.INV_REF
        }
        confidence = self._propagate_confidence(uncertain)

        for i, func in enumerate(graph.functions):
            func.resolved_abstract_value = pessimistic.values[i]
            func.uncertain = func.id in uncertain
            func.diagnostics = diagnostics.get(func.id, [])

        logger.debug(
            "Escape analysis converged: %d functions, %d updates, %d evaluations, %d uncertain",
            len(graph), len(pessimistic.updates), pessimistic.evaluations, len(uncertain),
        )

        return EscapeResult(
            graph=graph,
            values={f.id: pessimistic.values[i] for i, f in enumerate(graph.functions)},
            optimistic={f.id: optimistic.values[i] for i, f in enumerate(graph.functions)},
            uncertain=uncertain,
            confidence=confidence,
            diagnostics=diagnostics,
            updates=pessimistic.updates,
            evaluations=pessimistic.evaluations,
        )

    def solve(self, policy: MissingBodyPolicy) -> FixpointRun:
        """Kleene iteration with an explicit worklist over the arena."""
        graph = self.graph
        n = len(graph)
        run = FixpointRun(values=[AbstractValue.NON_REF] * n)

        worklist: deque[int] = deque(range(n))
        queued = set(range(n))
        while worklist:
            idx = worklist.popleft()
            queued.discard(idx)
            run.evaluations += 1

            old = run.values[idx]
            new = old.join(self._evaluate(idx, run.values, policy))
            if new == old:
                continue

            run.values[idx] = new
            run.updates.append(ValueUpdate(graph.functions[idx].id, old, new, run.evaluations))
            for caller in graph.callers_of(idx):
                if caller not in queued:
                    queued.add(caller)
                    worklist.append(caller)

        return run

    def _evaluate(self, idx: int, values: list[AbstractValue], policy: MissingBodyPolicy) -> AbstractValue:
        func = self.graph.functions[idx]
        if func.body is None:
            if policy is MissingBodyPolicy.PESSIMISTIC:
                return AbstractValue.INV_REF
            if self.graph.is_external(idx):
                return AbstractValue.NON_REF
            return TypeContext(func.module_id, self.structs).absty(func.declared_return)
        value = BodyInterpreter(func, self.graph, values, self.structs).run()
        if self._malformed_return(func):
            return value.join(AbstractValue.INV_REF)
        return value

    def _malformed_return(self, func: Function) -> bool:
        """A return type that cannot be resolved says nothing about what escapes."""
        if isinstance(func.declared_return, Unresolved):
            return True
        ctx = TypeContext(func.module_id, self.structs)
        ctx.absty(func.declared_return)
        return bool(ctx.diagnostics)

    def _collect_diagnostics(self, values: list[AbstractValue]) -> dict[FunctionId, list[str]]:
        """Re-run each body once on the converged values to gather diagnostics."""
        diagnostics: dict[FunctionId, list[str]] = {}
        external = set(self.graph.external.values())
        for idx, func in enumerate(self.graph.functions):
            if idx in external:
                continue
            notes: list[str] = []
            if func.body is None:
                notes.append("body unavailable; assuming InvRef")
            else:
                interp = BodyInterpreter(func, self.graph, values, self.structs)
                interp.run()
                notes.extend(interp.diagnostics)
            ctx = TypeContext(func.module_id, self.structs)
            ctx.absty(func.declared_return)
            for _, ptype in func.parameters:
                ctx.absty(ptype)
            notes.extend(ctx.diagnostics)
            for callee in self.graph.callees_of(idx):
                if callee in external:
                    notes.append(f"calls {self.graph.functions[callee].id} outside the batch")
            if notes:
                diagnostics[func.id] = list(dict.fromkeys(notes))
        return diagnostics

    def _propagate_confidence(self, uncertain: set[FunctionId]) -> dict[FunctionId, float]:
        """Effective confidence: own confidence lowered by uncertain callees."""
        graph = self.graph
        conf = [0.0 if f.body is None else f.confidence for f in graph.functions]
        changed = True
        while changed:
            changed = False
            for idx, func in enumerate(graph.functions):
                if func.id not in uncertain:
                    continue
                for callee in graph.callees_of(idx):
                    if graph.functions[callee].id in uncertain and conf[callee] < conf[idx]:
                        conf[idx] = conf[callee]
                        changed = True
        return {f.id: conf[i] for i, f in enumerate(graph.functions)}


def analyze_modules(modules: Iterable[Module]) -> EscapeResult:
    """Run escape analysis over a batch of modules."""
    return EscapeAnalysisEngine(modules).run()

