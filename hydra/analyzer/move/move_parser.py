"""Move frontend: parses Aptos/Sui Move source into analysis modules.

Module items (``use``, ``friend``, structs, functions) are collected first so
that every signature is known before any body is lowered. Bodies are then
lowered to the abstract IR of ``hydra.analyzer.ir``: the lowering keeps the
data flow that decides what a function can return (locals, field borrows,
calls, global-storage borrows, branches and loops) and collapses everything
else (arithmetic, comparisons, literals, vector literals, macros) to
constants.

The same frontend reads decompiler output, which is emitted as Move-like
source.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

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
    UNIT,
    BodyOrigin,
    Function,
    FunctionId,
    Module,
    ModuleOrigin,
    MutableReference,
    Reference,
    Struct,
    StructDef,
    StructTable,
    TypeParser,
    TypeSignature,
    Visibility,
    is_reference,
    is_tuple,
    tuple_of,
    underlying,
)
from hydra.core.errors import SourceParseError
from hydra.core.types import Location

logger = logging.getLogger(__name__)


# ── Lexer ────────────────────────────────────────────────────────────────────

_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<comment>//[^\n]*|/\*.*?\*/)
    | (?P<bytes>[bx]"(?:[^"\\]|\\.)*")
    | (?P<addr>@[A-Za-z0-9_]+)
    | (?P<number>0x[0-9a-fA-F_]+|\d[\d_]*(?:u8|u16|u32|u64|u128|u256)?)
    | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    | (?P<op>==>|::|==|!=|<=|>=|&&|\|\||\.\.|[-+*/%&|^!<>=(){}\[\],;:.\#'])
    """,
    re.VERBOSE | re.DOTALL,
)


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    line: int


def tokenize(source: str) -> list[Token]:
    """Split Move source into tokens, dropping whitespace and comments."""
    tokens: list[Token] = []
    pos = 0
    line = 1
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if m is None:
            raise SourceParseError(
                f"unexpected character {source[pos]!r} at line {line}", line=line,
            )
        kind = m.lastgroup or "op"
        text = m.group(0)
        if kind not in ("ws", "comment"):
            tokens.append(Token(kind, text, line))
        line += text.count("\n")
        pos = m.end()
    return tokens


def _type_text(tokens: Iterable[Token]) -> str:
    return re.sub(r"&\s+mut\b", "&mut", " ".join(t.text for t in tokens))


_OPEN = {"(": ")", "{": "}", "[": "]", "<": ">"}


def _matching(tokens: list[Token], start: int) -> int:
    """Index of the token closing the bracket at ``start``."""
    open_text = tokens[start].text
    close_text = _OPEN[open_text]
    depth = 0
    for i in range(start, len(tokens)):
        text = tokens[i].text
        if text == open_text:
            depth += 1
        elif text == close_text:
            depth -= 1
            if depth == 0:
                return i
    raise SourceParseError(
        f"unbalanced {open_text!r} opened at line {tokens[start].line}",
        line=tokens[start].line,
    )


def _split_top(tokens: list[Token], sep: str = ",") -> list[list[Token]]:
    """Split on ``sep`` outside any brackets; empty segments are dropped."""
    parts: list[list[Token]] = [[]]
    depth = 0
    for tok in tokens:
        if tok.text in ("(", "{", "[", "<"):
            depth += 1
        elif tok.text in (")", "}", "]", ">"):
            depth -= 1
        if tok.text == sep and depth == 0:
            parts.append([])
        else:
            parts[-1].append(tok)
    return [p for p in parts if p]


# ── Module items ─────────────────────────────────────────────────────────────

_MODIFIERS = frozenset({"public", "entry", "native", "inline"})


@dataclass
class _PendingFunction:
    name: str
    line: int
    end_line: int
    visibility: Visibility
    native: bool
    type_params: list[str]
    params: list[tuple[str, list[Token]]]
    ret: list[Token]
    body: tuple[int, int] | None


@dataclass
class _PendingStruct:
    decl: StructDef
    type_params: list[str]
    fields: list[tuple[str, list[Token]]]


class _ModuleBuilder:
    """Turns the token range of one ``module`` block into a Module."""

    def __init__(
        self,
        module_id: str,
        tokens: list[Token],
        file_path: str,
        known_structs: StructTable | None,
    ) -> None:
        self.module_id = module_id
        self.toks = tokens
        self.file_path = file_path
        self.known_structs = known_structs or {}
        short_name = module_id.rpartition("::")[2]
        self.aliases: dict[str, str] = {short_name: module_id}
        self.dependencies: set[str] = set()
        self.module = Module(
            module_id=module_id,
            source_path=file_path,
            origin=ModuleOrigin.SOURCE_AVAILABLE,
        )
        self._structs: list[_PendingStruct] = []
        self._functions: list[_PendingFunction] = []

    def build(self) -> Module:
        self._scan_items()

        for pending in self._structs:
            self.module.add_struct(pending.decl)
        for pending in self._structs:
            parser = self.type_parser(pending.type_params)
            pending.decl.fields = [
                (fname, parser.parse_lenient(_type_text(ftoks)))
                for fname, ftoks in pending.fields
            ]

        for pending in self._functions:
            parser = self.type_parser(pending.type_params)
            func = Function(
                module_id=self.module_id,
                name=pending.name,
                visibility=pending.visibility,
                parameters=[
                    (pname, parser.parse_lenient(_type_text(ptoks)))
                    for pname, ptoks in pending.params
                ],
                declared_return=parser.parse_lenient(_type_text(pending.ret)) if pending.ret else UNIT,
                location=Location(
                    file_path=self.file_path,
                    start_line=pending.line,
                    end_line=pending.end_line,
                ),
            )
            self.module.add_function(func)

        for pending in self._functions:
            self._lower(pending)

        self.module.dependencies = {d for d in self.dependencies if d != self.module_id}
        return self.module

    # ── Helpers used by the body lowering ───────────────────────────────────

    def type_parser(self, type_params: Iterable[str] = ()) -> TypeParser:
        return TypeParser(
            self.module_id,
            self.module.structs,
            self.aliases,
            type_params,
            self.known_structs,
        )

    def lookup_struct(self, module_id: str, name: str) -> StructDef | None:
        if module_id == self.module_id:
            return self.module.structs.get(name)
        return self.known_structs.get((module_id, name))

    def struct_with_field(self, field_name: str) -> StructDef | None:
        """The only local struct declaring ``field_name``, if unique."""
        candidates = [s for s in self.module.structs.values() if s.field_type(field_name) is not None]
        return candidates[0] if len(candidates) == 1 else None

    def resolve_function(self, path: list[str]) -> FunctionId:
        name = path[-1]
        if len(path) == 1:
            if name in self.module.functions:
                return FunctionId(self.module_id, name)
            alias = self.aliases.get(name, "")
            if alias.count("::") >= 2:
                module_id, _, fname = alias.rpartition("::")
                return FunctionId(module_id, fname)
            return FunctionId(self.module_id, name)
        module_path = path[:-1]
        if len(module_path) == 1:
            if module_path[0] == "Self":
                return FunctionId(self.module_id, name)
            return FunctionId(self.aliases.get(module_path[0], module_path[0]), name)
        return FunctionId("::".join(module_path), name)

    def return_type(self, fid: FunctionId) -> TypeSignature | None:
        if fid.module_id != self.module_id:
            return None
        func = self.module.functions.get(fid.name)
        return func.declared_return if func is not None else None

    # ── Item scan ───────────────────────────────────────────────────────────

    def _scan_items(self) -> None:
        toks = self.toks
        i = 0
        while i < len(toks):
            text = toks[i].text
            if text == "#" and i + 1 < len(toks) and toks[i + 1].text == "[":
                i = _matching(toks, i + 1) + 1
                continue
            if text == "use":
                i = self._use(i)
                continue
            if text == "friend":
                end = self._find(i, ";")
                self.dependencies.add(self._path_text(toks[i + 1:end]))
                i = end + 1
                continue
            if text == "const":
                i = self._find(i, ";") + 1
                continue
            if text == "spec":
                i = self._skip_block_or_semicolon(i)
                continue

            start = i
            modifiers: list[str] = []
            while i < len(toks) and toks[i].text in _MODIFIERS:
                if toks[i].text == "public" and i + 1 < len(toks) and toks[i + 1].text == "(":
                    close = _matching(toks, i + 1)
                    modifiers.append(f"public({_type_text(toks[i + 2:close])})")
                    i = close + 1
                else:
                    modifiers.append(toks[i].text)
                    i += 1
            if i < len(toks) and toks[i].text == "struct":
                i = self._struct(i)
            elif i < len(toks) and toks[i].text == "enum":
                i = self._skip_block_or_semicolon(i)
            elif i < len(toks) and toks[i].text == "fun":
                i = self._function(i, modifiers)
            else:
                i = max(i, start + 1)

    def _find(self, i: int, text: str) -> int:
        while i < len(self.toks) and self.toks[i].text != text:
            i += 1
        if i == len(self.toks):
            raise SourceParseError(f"expected {text!r} in module {self.module_id}")
        return i

    def _skip_block_or_semicolon(self, i: int) -> int:
        toks = self.toks
        while i < len(toks) and toks[i].text not in ("{", ";"):
            i += 1
        if i < len(toks) and toks[i].text == "{":
            return _matching(toks, i) + 1
        return i + 1

    @staticmethod
    def _path_text(tokens: list[Token]) -> str:
        return "".join(t.text for t in tokens)

    def _use(self, i: int) -> int:
        toks = self.toks
        end = self._find(i, ";")
        body = toks[i + 1:end]
        if body and body[-1].text == "}":
            open_idx = next(k for k, t in enumerate(body) if t.text == "{")
            prefix = [t.text for t in body[:open_idx] if t.text != "::"]
            for member in _split_top(body[open_idx + 1:-1]):
                self._use_path(prefix, member)
        else:
            self._use_path([], body)
        return end + 1

    def _use_path(self, prefix: list[str], tokens: list[Token]) -> None:
        alias = None
        texts = [t.text for t in tokens]
        if "as" in texts:
            alias = texts[texts.index("as") + 1]
            texts = texts[:texts.index("as")]
        segments = prefix + [t for t in texts if t != "::"]
        if segments and segments[-1] == "Self":
            segments = segments[:-1]
        if len(segments) < 2:
            return
        name = alias or segments[-1]
        self.aliases[name] = "::".join(segments)
        if len(segments) == 2:
            self.dependencies.add("::".join(segments))
        else:
            self.dependencies.add("::".join(segments[:-1]))

    def _type_params(self, i: int) -> tuple[int, list[str]]:
        close = _matching(self.toks, i)
        names = []
        for part in _split_top(self.toks[i + 1:close]):
            idents = [t.text for t in part if t.kind == "ident" and t.text != "phantom"]
            if idents:
                names.append(idents[0])
        return close + 1, names

    def _abilities(self, i: int) -> tuple[int, set[str]]:
        abilities: set[str] = set()
        toks = self.toks
        i += 1  # has
        while i < len(toks) and (toks[i].kind == "ident" or toks[i].text == ","):
            if toks[i].kind == "ident":
                abilities.add(toks[i].text)
            i += 1
        return i, abilities

    def _struct(self, i: int) -> int:
        toks = self.toks
        name_tok = toks[i + 1]
        j = i + 2
        type_params: list[str] = []
        if j < len(toks) and toks[j].text == "<":
            j, type_params = self._type_params(j)
        abilities: set[str] = set()
        if j < len(toks) and toks[j].text == "has":
            j, abilities = self._abilities(j)

        fields: list[tuple[str, list[Token]]] = []
        if j < len(toks) and toks[j].text == "{":
            close = _matching(toks, j)
            for part in _split_top(toks[j + 1:close]):
                if len(part) < 3 or part[1].text != ":":
                    raise SourceParseError(
                        f"malformed field in struct {name_tok.text} at line {part[0].line}",
                        line=part[0].line,
                    )
                fields.append((part[0].text, part[2:]))
            j = close + 1
        elif j < len(toks) and toks[j].text == "(":
            close = _matching(toks, j)
            for pos, part in enumerate(_split_top(toks[j + 1:close])):
                fields.append((str(pos), part))
            j = close + 1
            if j < len(toks) and toks[j].text == "has":
                j, more = self._abilities(j)
                abilities |= more
        if j < len(toks) and toks[j].text == ";":
            j += 1

        decl = StructDef(
            module_id=self.module_id,
            name=name_tok.text,
            is_internal=True,
            abilities=frozenset(abilities),
            line=name_tok.line,
        )
        self._structs.append(_PendingStruct(decl, type_params, fields))
        return j

    def _function(self, i: int, modifiers: list[str]) -> int:
        toks = self.toks
        fun_tok = toks[i]
        name = toks[i + 1].text
        j = i + 2
        type_params: list[str] = []
        if toks[j].text == "<":
            j, type_params = self._type_params(j)
        if toks[j].text != "(":
            raise SourceParseError(f"expected parameter list for {name} at line {fun_tok.line}")
        close = _matching(toks, j)
        params = []
        for part in _split_top(toks[j + 1:close]):
            if part[0].text == "mut":
                part = part[1:]
            if len(part) < 3 or part[1].text != ":":
                raise SourceParseError(f"malformed parameter of {name} at line {part[0].line}")
            params.append((part[0].text, part[2:]))
        j = close + 1

        ret: list[Token] = []
        if j < len(toks) and toks[j].text == ":":
            k = j + 1
            while k < len(toks) and toks[k].text not in ("acquires", "{", ";"):
                k += 1
            ret = toks[j + 1:k]
            j = k
        while j < len(toks) and toks[j].text not in ("{", ";"):
            j += 1  # acquires list

        body = None
        end_line = fun_tok.line
        if j < len(toks) and toks[j].text == "{":
            close = _matching(toks, j)
            body = (j, close + 1)
            end_line = toks[close].line
            j = close + 1
        else:
            j += 1

        if "public(friend)" in modifiers or "public(package)" in modifiers:
            visibility = Visibility.FRIEND
        elif "public" in modifiers or "entry" in modifiers:
            visibility = Visibility.PUBLIC
        else:
            visibility = Visibility.PRIVATE

        self._functions.append(_PendingFunction(
            name=name,
            line=fun_tok.line,
            end_line=end_line,
            visibility=visibility,
            native="native" in modifiers,
            type_params=type_params,
            params=params,
            ret=ret,
            body=body,
        ))
        return j

    def _lower(self, pending: _PendingFunction) -> None:
        func = self.module.functions[pending.name]
        if pending.native:
            # Natives are trusted to behave as their signature says
            func.body = [Typed("%ret", func.declared_return), Return("%ret")]
            func.body_origin = BodyOrigin.SOURCE
            return
        if pending.body is None:
            return
        start, end = pending.body
        try:
            func.body = _BodyLowerer(self, func, pending.type_params, self.toks[start:end]).lower()
            func.body_origin = BodyOrigin.SOURCE
        except SourceParseError as exc:
            note = f"{func.name}: {exc.to_diagnostic()}"
            self.module.diagnostics.append(note)
            logger.warning(
                "Could not lower body of %s::%s: %s", self.module_id, func.name, exc.message,
                extra={"module_id": self.module_id, "function": func.name},
            )


# ── Body lowering ────────────────────────────────────────────────────────────

_BINARY_OPS = frozenset({
    "+", "-", "*", "/", "%", "==", "!=", "<", ">", "<=", ">=",
    "&&", "||", "&", "|", "^", "..", "as", "==>",
})
_TYPE_ARG_TOKENS = frozenset({",", "&", "::", "(", ")", "<", ">"})
_GLOBAL_BORROWS = {"borrow_global": Reference, "borrow_global_mut": MutableReference}


@dataclass
class _Place:
    """An lvalue-ish expression: a register, or a field of a register."""
    reg: str = ""
    is_local: bool = False
    base: str = ""
    struct_module: str = ""
    struct: str = ""
    field_name: str = ""
    field_type: TypeSignature | None = None

    @property
    def is_field(self) -> bool:
        return bool(self.field_name)


@dataclass
class _BodyLowerer:
    builder: _ModuleBuilder
    func: Function
    type_params: list[str]
    toks: list[Token]
    pos: int = 0
    types: dict[str, TypeSignature] = field(default_factory=dict)
    locals: set[str] = field(default_factory=set)
    _frames: list[list[Op]] = field(default_factory=lambda: [[]])
    _counter: int = 0

    def __post_init__(self) -> None:
        self.parser = self.builder.type_parser(self.type_params)
        for pname, ptype in self.func.parameters:
            self.types[pname] = ptype
            self.locals.add(pname)

    def lower(self) -> list[Op]:
        value = self.block()
        if self.pos != len(self.toks):
            raise self.error("trailing tokens after function body")
        self.emit(Return(value))
        return self._frames[0]

    # ── Token cursor ────────────────────────────────────────────────────────

    def peek(self, k: int = 0) -> Token | None:
        idx = self.pos + k
        return self.toks[idx] if idx < len(self.toks) else None

    def at(self, text: str, k: int = 0) -> bool:
        tok = self.peek(k)
        return tok is not None and tok.text == text

    def next(self) -> Token:
        tok = self.peek()
        if tok is None:
            raise self.error("unexpected end of function body")
        self.pos += 1
        return tok

    def accept(self, text: str) -> bool:
        if self.at(text):
            self.pos += 1
            return True
        return False

    def expect(self, text: str) -> Token:
        tok = self.peek()
        if tok is None or tok.text != text:
            found = tok.text if tok is not None else "end of body"
            raise self.error(f"expected {text!r}, found {found!r}")
        self.pos += 1
        return tok

    def error(self, message: str) -> SourceParseError:
        tok = self.peek() or (self.toks[-1] if self.toks else None)
        line = tok.line if tok is not None else 0
        return SourceParseError(
            f"{message} at line {line}",
            module_id=self.func.module_id,
            function=self.func.name,
            line=line,
        )

    # ── Emission ────────────────────────────────────────────────────────────

    def emit(self, op: Op) -> None:
        self._frames[-1].append(op)

    def push(self) -> None:
        self._frames.append([])

    def pop(self) -> tuple[Op, ...]:
        return tuple(self._frames.pop())

    def temp(self) -> str:
        self._counter += 1
        return f"%t{self._counter}"

    def const(self) -> str:
        dest = self.temp()
        self.emit(Const(dest))
        return dest

    def assign(self, name: str, reg: str, ty: TypeSignature | None = None) -> None:
        self.locals.add(name)
        self.emit(LoadLocal(name, reg))
        if ty is None:
            ty = self.types.get(reg)
        if ty is not None:
            self.types[name] = ty

    # ── Statements ──────────────────────────────────────────────────────────

    def block(self) -> str | None:
        self.expect("{")
        value: str | None = None
        while not self.at("}"):
            if self.peek() is None:
                raise self.error("unterminated block")
            if self.accept(";"):
                value = None
                continue
            value, block_like = self.statement()
            if self.accept(";"):
                value = None
                continue
            if self.at("}"):
                break
            if not block_like:
                raise self.error(f"expected ';' before {self.peek().text!r}")
            value = None
        self.expect("}")
        return value

    def statement(self) -> tuple[str | None, bool]:
        tok = self.peek()
        if tok.text == "let":
            self.let()
            return None, False
        if tok.kind == "ident" and self.at("=", 1):
            name = self.next().text
            self.next()
            self.assign(name, self.expr())
            return None, False
        if tok.text in ("if", "while", "loop", "{"):
            return self.materialize(self.primary(), Borrow.NONE), True
        reg = self.expr()
        if self.accept("="):
            # Writes through references or fields do not create new escapes
            self.expr()
            return None, False
        return reg, False

    def let(self) -> None:
        self.expect("let")
        names = self.pattern()
        ty = None
        if self.accept(":"):
            ty = self.type_until({"=", ";"})
        if self.accept("="):
            reg = self.expr()
            if len(names) == 1:
                self.assign(names[0], reg, ty)
            else:
                for name in names:
                    self.assign(name, reg)
        else:
            for name in names:
                self.locals.add(name)
            if ty is not None and len(names) == 1:
                self.types[names[0]] = ty

    def pattern(self) -> list[str]:
        if self.accept("("):
            names: list[str] = []
            while not self.at(")"):
                names.extend(self.pattern())
                if not self.accept(","):
                    break
            self.expect(")")
            return names
        tok = self.next()
        if tok.text == "mut":
            tok = self.next()
        if tok.kind != "ident":
            raise self.error(f"unexpected {tok.text!r} in pattern")
        if self.at("::") or self.at("{") or self.at("<"):
            while self.accept("::"):
                self.next()
            if self.at("<"):
                self.pos = _matching(self.toks, self.pos) + 1
            self.expect("{")
            names = []
            while not self.at("}"):
                field_tok = self.next()
                if self.accept(":"):
                    names.extend(self.pattern())
                elif field_tok.text != "..":
                    names.append(field_tok.text)
                if not self.accept(","):
                    break
            self.expect("}")
            return names
        if tok.text == "_":
            return []
        return [tok.text]

    def type_until(self, stops: set[str]) -> TypeSignature:
        start = self.pos
        depth = 0
        while self.peek() is not None:
            text = self.peek().text
            if depth == 0 and text in stops:
                break
            if text in ("<", "("):
                depth += 1
            elif text in (">", ")"):
                depth -= 1
            self.pos += 1
        return self.parser.parse_lenient(_type_text(self.toks[start:self.pos]))

    # ── Expressions ─────────────────────────────────────────────────────────

    def expr(self) -> str:
        left = self.unary()
        while True:
            tok = self.peek()
            if tok is None or tok.text not in _BINARY_OPS:
                break
            self.next()
            if tok.text == "as":
                self.type_until({")", ";", ",", "}"} | _BINARY_OPS)
                left = self.const()
                continue
            if tok.text in ("<", ">") and self.at(tok.text):
                self.next()  # shift
            self.unary()
            left = self.const()
        return left

    def unary(self) -> str:
        tok = self.peek()
        if tok is None:
            raise self.error("expected expression")
        text = tok.text
        if text == "&":
            self.next()
            borrow = Borrow.MUTABLE if self.accept("mut") else Borrow.IMMUTABLE
            if self.accept("*"):
                # Reborrow keeps the referent
                return self.materialize(_Place(reg=self.unary()), Borrow.NONE)
            return self.materialize(self.postfix(), borrow)
        if text == "*":
            self.next()
            reg = self.unary()
            dest = self.const()
            ty = self.types.get(reg)
            if ty is not None and is_reference(ty):
                self.types[dest] = underlying(ty)
            return dest
        if text in ("!", "-"):
            self.next()
            self.unary()
            return self.const()
        if text in ("move", "copy") and self.peek(1) is not None and self.peek(1).kind == "ident":
            self.next()
        if text == "return":
            self.next()
            nxt = self.peek()
            if nxt is None or nxt.text in (";", "}", ")", ","):
                self.emit(Return())
            else:
                self.emit(Return(self.expr()))
            return self.const()
        if text == "abort":
            self.next()
            self.expr()
            return self.const()
        if text in ("break", "continue"):
            self.next()
            return self.const()
        return self.materialize(self.postfix(), Borrow.NONE)

    def postfix(self) -> _Place:
        place = self.primary()
        while True:
            if self.at(".") and self.peek(1) is not None and self.peek(1).kind == "ident":
                self.next()
                name = self.next().text
                if self.at("<"):
                    self.try_type_args()
                if self.at("("):
                    recv = self.materialize(place, Borrow.NONE)
                    args = [recv] + self.call_args()
                    place = _Place(reg=self.method_call(recv, name, args))
                    continue
                base = self.materialize(place, Borrow.NONE)
                place = self.field_place(base, name)
                continue
            if self.at("["):
                self.next()
                self.expr()
                self.expect("]")
                self.materialize(place, Borrow.NONE)
                place = _Place(reg=self.const())
                continue
            return place

    def materialize(self, place: _Place, borrow: Borrow) -> str:
        if place.is_field:
            dest = self.temp()
            self.emit(LoadField(
                dest, place.base, place.struct, place.field_name, borrow, place.struct_module,
            ))
            ftype = place.field_type
            if ftype is not None:
                if borrow is Borrow.MUTABLE:
                    ftype = MutableReference(ftype)
                elif borrow is Borrow.IMMUTABLE:
                    ftype = Reference(ftype)
                self.types[dest] = ftype
            return dest
        if borrow is Borrow.NONE:
            return place.reg
        dest = self.temp()
        ty = self.types.get(place.reg)
        if place.is_local and ty is not None and not is_reference(ty):
            wrapped = MutableReference(ty) if borrow is Borrow.MUTABLE else Reference(ty)
            self.emit(Typed(dest, wrapped))
            self.types[dest] = wrapped
        else:
            self.emit(LoadLocal(dest, place.reg))
            if ty is not None:
                self.types[dest] = ty
        return dest

    def field_place(self, base: str, name: str) -> _Place:
        decl = None
        ty = self.types.get(base)
        if ty is not None:
            inner = underlying(ty)
            if isinstance(inner, Struct) and not is_tuple(inner):
                decl = self.builder.lookup_struct(inner.module_id, inner.name)
                if decl is None:
                    return _Place(base=base, struct_module=inner.module_id, struct=inner.name, field_name=name)
        if decl is None:
            decl = self.builder.struct_with_field(name)
        if decl is None:
            return _Place(base=base, struct_module=self.func.module_id, struct="<unknown>", field_name=name)
        return _Place(
            base=base,
            struct_module=decl.module_id,
            struct=decl.name,
            field_name=name,
            field_type=decl.field_type(name),
        )

    def primary(self) -> _Place:
        tok = self.peek()
        if tok is None:
            raise self.error("expected expression")
        text = tok.text
        if text == "{":
            value = self.block()
            return _Place(reg=value if value is not None else self.const())
        self.next()
        if tok.kind in ("number", "bytes", "addr") or text in ("true", "false"):
            return _Place(reg=self.const())
        if text == "(":
            if self.accept(")"):
                return _Place(reg=self.const())
            items = [self.expr()]
            while self.accept(","):
                if self.at(")"):
                    break
                items.append(self.expr())
            self.expect(")")
            if len(items) == 1:
                return _Place(reg=items[0], is_local=items[0] in self.locals)
            dest = self.temp()
            self.emit(Branch(tuple((LoadLocal(dest, item),) for item in items)))
            item_types = [self.types.get(item) for item in items]
            if all(t is not None for t in item_types):
                self.types[dest] = tuple_of(item_types)
            return _Place(reg=dest)
        if text == "if":
            return _Place(reg=self.if_expr())
        if text == "while":
            self.push()
            self.expect("(")
            self.expr()
            self.expect(")")
            self.block_or_expr()
            self.emit(Loop(self.pop()))
            return _Place(reg=self.const())
        if text == "loop":
            self.push()
            self.block()
            self.emit(Loop(self.pop()))
            return _Place(reg=self.const())
        if text == "vector" and (self.at("[") or self.at("<")):
            if self.at("<"):
                self.pos = _matching(self.toks, self.pos) + 1
            self.expect("[")
            while not self.at("]"):
                self.expr()
                if not self.accept(","):
                    break
            self.expect("]")
            return _Place(reg=self.const())
        if tok.kind == "ident":
            return self.path_expr(tok)
        raise self.error(f"unexpected token {text!r}")

    def path_expr(self, first: Token) -> _Place:
        path = [first.text]
        while self.at("::") and self.peek(1) is not None and self.peek(1).kind == "ident":
            self.next()
            path.append(self.next().text)
        type_args = self.try_type_args() if self.at("<") else None
        if self.at("::") and self.peek(1) is not None and self.peek(1).kind == "ident":
            # Generic module path such as `Type<T>::f`
            self.next()
            path.append(self.next().text)
        if self.at("!") and self.at("(", 1):
            self.next()
            self.call_args()
            return _Place(reg=self.const())
        if self.at("("):
            args = self.call_args()
            return _Place(reg=self.call(path, type_args or [], args))
        if self.at("{") and path[-1][:1].isupper():
            return _Place(reg=self.pack(path, type_args or []))
        if len(path) == 1 and path[0] in self.locals:
            return _Place(reg=path[0], is_local=True)
        return _Place(reg=self.const())

    def try_type_args(self) -> list[list[Token]] | None:
        """Consume ``<...>`` if it is an explicit type-argument list."""
        depth = 0
        j = self.pos
        while j < len(self.toks):
            tok = self.toks[j]
            if tok.text == "<":
                depth += 1
            elif tok.text == ">":
                depth -= 1
                if depth == 0:
                    break
            elif tok.text not in _TYPE_ARG_TOKENS and tok.kind not in ("ident", "number"):
                return None
            j += 1
        else:
            return None
        following = self.toks[j + 1].text if j + 1 < len(self.toks) else ""
        if following not in ("(", "{", "[", "::"):
            return None
        args = _split_top(self.toks[self.pos + 1:j])
        self.pos = j + 1
        return args

    def call_args(self) -> list[str]:
        self.expect("(")
        args = []
        while not self.at(")"):
            args.append(self.expr())
            if not self.accept(","):
                break
        self.expect(")")
        return args

    def block_or_expr(self) -> str:
        if self.at("{"):
            value = self.block()
            return value if value is not None else self.const()
        return self.expr()

    def if_expr(self) -> str:
        self.expect("(")
        self.expr()
        self.expect(")")
        dest = self.temp()
        self.push()
        self.emit(LoadLocal(dest, self.block_or_expr()))
        then_arm = self.pop()
        if self.accept("else"):
            self.push()
            self.emit(LoadLocal(dest, self.block_or_expr()))
            else_arm = self.pop()
        else:
            else_arm = (Const(dest),)
        self.emit(Branch((then_arm, else_arm)))
        return dest

    def pack(self, path: list[str], type_args: list[list[Token]]) -> str:
        self.expect("{")
        while not self.at("}"):
            self.next()
            if self.accept(":"):
                self.expr()
            if not self.accept(","):
                break
        self.expect("}")
        dest = self.temp()
        self.emit(Pack(dest, path[-1]))
        text = "::".join(path)
        if type_args:
            text += "<" + ", ".join(_type_text(a) for a in type_args) + ">"
        self.types[dest] = self.parser.parse_lenient(text)
        return dest

    def call(self, path: list[str], type_args: list[list[Token]], args: list[str]) -> str:
        name = path[-1]
        if name[:1].isupper():
            # Positional struct or variant constructor
            dest = self.temp()
            self.emit(Pack(dest, name))
            return dest
        dest = self.temp()
        if len(path) == 1 and name not in self.builder.module.functions:
            builtin = self.builtin(dest, name, type_args, args)
            if builtin:
                return dest
        callee = self.builder.resolve_function(path)
        self.emit(Call(dest, callee, tuple(args)))
        ret = self.builder.return_type(callee)
        if ret is not None:
            self.types[dest] = ret
        return dest

    def builtin(self, dest: str, name: str, type_args: list[list[Token]], args: list[str]) -> bool:
        if name in _GLOBAL_BORROWS or name == "move_from":
            if type_args:
                resource = self.parser.parse_lenient(_type_text(type_args[0]))
            else:
                resource = self.parser.parse_lenient("")
            ty = _GLOBAL_BORROWS[name](resource) if name in _GLOBAL_BORROWS else resource
            self.emit(Typed(dest, ty))
            self.types[dest] = ty
            return True
        if name in ("exists", "move_to"):
            self.emit(Const(dest))
            return True
        if name == "freeze":
            arg_type = self.types.get(args[0]) if args else None
            ty = Reference(underlying(arg_type) if arg_type is not None else UNIT)
            self.emit(Typed(dest, ty))
            self.types[dest] = ty
            return True
        return False

    def method_call(self, recv: str, name: str, args: list[str]) -> str:
        ty = self.types.get(recv)
        module_id = None
        if ty is not None:
            inner = underlying(ty)
            if isinstance(inner, Struct) and not is_tuple(inner):
                module_id = inner.module_id
        if module_id is None:
            module_id = self.func.module_id
        dest = self.temp()
        callee = FunctionId(module_id, name)
        self.emit(Call(dest, callee, tuple(args)))
        ret = self.builder.return_type(callee)
        if ret is not None:
            self.types[dest] = ret
        return dest


# ── Public API ───────────────────────────────────────────────────────────────


def parse_move_source(
    source: str,
    file_path: str = "",
    known_structs: StructTable | None = None,
    rename: Mapping[str, str] | None = None,
) -> list[Module]:
    """Parse every module declared in a Move source file.

    ``known_structs`` lets field accesses and types resolve against structs
    declared by other modules of the batch. ``rename`` maps declared module
    ids to the ids the modules should be built under.
    """
    tokens = tokenize(source)
    modules: list[Module] = []
    address = ""
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok.text == "address" and i + 2 < len(tokens) and tokens[i + 2].text == "{":
            address = tokens[i + 1].text
            i += 3
            continue
        if tok.text == "module" and tok.kind == "ident" and i + 1 < len(tokens):
            j = i + 1
            path = [tokens[j].text]
            j += 1
            while j + 1 < len(tokens) and tokens[j].text == "::":
                path.append(tokens[j + 1].text)
                j += 2
            if len(path) == 1 and address:
                path.insert(0, address)
            module_id = "::".join(path)
            if rename:
                module_id = rename.get(module_id, module_id)
            if j < len(tokens) and tokens[j].text == "{":
                end = _matching(tokens, j)
                body = tokens[j + 1:end]
                i = end + 1
            elif j < len(tokens) and tokens[j].text == ";":
                body = tokens[j + 1:]
                i = len(tokens)
            else:
                raise SourceParseError(f"malformed module header at line {tok.line}", line=tok.line)
            modules.append(_ModuleBuilder(module_id, body, file_path, known_structs).build())
            continue
        i += 1

    logger.debug("Parsed %d Move module(s) from %s", len(modules), file_path or "<source>")
    return modules


def parse_move_module(
    source: str,
    file_path: str = "",
    known_structs: StructTable | None = None,
) -> Module:
    """Parse a source text that declares exactly one module."""
    modules = parse_move_source(source, file_path, known_structs)
    if len(modules) != 1:
        raise SourceParseError(
            f"expected one module in {file_path or 'source'}, found {len(modules)}",
            file_path=file_path,
        )
    return modules[0]


def parse_move_package(root: str | Path) -> list[Module]:
    """Parse every ``.move`` file below ``root`` (a file or a directory)."""
    root = Path(root)
    if not root.exists():
        raise FileNotFoundError(f"Move source path not found: {root}")
    files = [root] if root.is_file() else sorted(root.rglob("*.move"))
    modules: list[Module] = []
    for path in files:
        modules.extend(parse_move_source(path.read_text(encoding="utf-8"), str(path)))
    return modules
