"""Compiled-module ingestion.

A module published without source reaches the engine as a JSON manifest
produced from its bytecode: the raw bytecode (hex) plus the signatures the
binary format carries (struct layouts, function visibility, parameter and
return types). Function bodies are not part of the manifest; they stay
unavailable until the decompiler supplies them.

Example::

    {
      "module_id": "0xcafe::vault",
      "bytecode": "a11ceb0b0600...",
      "dependencies": ["0x1::coin"],
      "structs": [{"name": "Vault", "fields": [{"name": "balance", "type": "u64"}]}],
      "functions": [
        {"name": "balance_mut", "visibility": "public",
         "parameters": [{"name": "v", "type": "&mut 0xcafe::vault::Vault"}],
         "returns": "&mut u64", "bytecode_offset": 112}
      ]
    }
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from hydra.analyzer.model import (
    UNIT,
    BodyOrigin,
    Function,
    Module,
    ModuleOrigin,
    StructDef,
    StructTable,
    TypeParser,
    Visibility,
)
from hydra.core.errors import ManifestInvalid
from hydra.core.types import Location

logger = logging.getLogger(__name__)


class FieldManifest(BaseModel):
    name: str
    type: str


class StructManifest(BaseModel):
    name: str
    fields: list[FieldManifest] = Field(default_factory=list)
    abilities: list[str] = Field(default_factory=list)
    type_params: list[str] = Field(default_factory=list)
    # Structs are treated as internal unless the publisher says otherwise
    is_internal: bool = True


class FunctionManifest(BaseModel):
    name: str
    visibility: Literal["public", "friend", "private"] = "private"
    type_params: list[str] = Field(default_factory=list)
    parameters: list[FieldManifest] = Field(default_factory=list)
    returns: str = "()"
    bytecode_offset: int | None = Field(default=None, ge=0)


class ModuleManifest(BaseModel):
    """Signatures and bytecode of one compiled module."""

    module_id: str
    bytecode: bytes
    dependencies: list[str] = Field(default_factory=list)
    aliases: dict[str, str] = Field(default_factory=dict)
    structs: list[StructManifest] = Field(default_factory=list)
    functions: list[FunctionManifest] = Field(default_factory=list)
    source_path: str = ""

    @field_validator("module_id")
    @classmethod
    def _qualified(cls, v: str) -> str:
        address, sep, name = v.rpartition("::")
        if not sep or not address or not name:
            raise ValueError(f"module_id must look like <address>::<name>, got {v!r}")
        return v

    @field_validator("bytecode", mode="before")
    @classmethod
    def _decode_hex(cls, v: object) -> bytes:
        if isinstance(v, bytes):
            return v
        if not isinstance(v, str):
            raise ValueError("bytecode must be a hex string")
        text = v[2:] if v.startswith("0x") else v
        try:
            data = bytes.fromhex(text)
        except ValueError as exc:
            raise ValueError(f"bytecode is not valid hex: {exc}") from exc
        if not data:
            raise ValueError("bytecode is empty")
        return data

    def to_module(self, known_structs: StructTable | None = None) -> Module:
        """Build a BytecodeOnly module whose functions have no bodies yet."""
        module = Module(
            module_id=self.module_id,
            origin=ModuleOrigin.BYTECODE_ONLY,
            bytecode=self.bytecode,
            source_path=self.source_path,
            dependencies=set(self.dependencies),
        )
        for s in self.structs:
            module.add_struct(StructDef(
                module_id=self.module_id,
                name=s.name,
                is_internal=s.is_internal,
                abilities=frozenset(s.abilities),
            ))
        for s in self.structs:
            parser = TypeParser(self.module_id, module.structs, self.aliases, s.type_params, known_structs)
            module.structs[s.name].fields = [(f.name, parser.parse_lenient(f.type)) for f in s.fields]

        for f in self.functions:
            parser = TypeParser(self.module_id, module.structs, self.aliases, f.type_params, known_structs)
            module.add_function(Function(
                module_id=self.module_id,
                name=f.name,
                visibility=Visibility(f.visibility),
                parameters=[(p.name, parser.parse_lenient(p.type)) for p in f.parameters],
                declared_return=parser.parse_lenient(f.returns) if f.returns.strip() else UNIT,
                body=None,
                body_origin=BodyOrigin.MISSING,
                location=Location(file_path=self.source_path, bytecode_offset=f.bytecode_offset),
                confidence=0.0,
            ))
        return module


def parse_manifest(data: str | bytes | dict, source: str = "") -> ModuleManifest:
    """Validate a manifest from JSON text or an already decoded mapping."""
    try:
        if isinstance(data, dict):
            manifest = ModuleManifest.model_validate(data)
        else:
            manifest = ModuleManifest.model_validate_json(data)
    except ValidationError as exc:
        raise ManifestInvalid(
            f"invalid module manifest {source}: {exc.error_count()} error(s)" if source
            else f"invalid module manifest: {exc.error_count()} error(s)",
            source=source,
            errors=json.loads(exc.json()),
        ) from exc
    if source and not manifest.source_path:
        manifest.source_path = source
    return manifest


def load_manifest(path: str | Path) -> ModuleManifest:
    path = Path(path)
    return parse_manifest(path.read_bytes(), str(path))


def load_manifests(root: str | Path, known_structs: StructTable | None = None) -> list[Module]:
    """Load every ``*.json`` manifest below ``root`` as a BytecodeOnly module."""
    root = Path(root)
    if not root.exists():
        raise FileNotFoundError(f"manifest path not found: {root}")
    paths = [root] if root.is_file() else sorted(root.rglob("*.json"))
    manifests = [load_manifest(p) for p in paths]
    logger.info("Loaded %d compiled module manifest(s) from %s", len(manifests), root)
    return [m.to_module(known_structs) for m in manifests]
