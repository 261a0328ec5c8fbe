"""LLM-backed decompiler.

Asks the primary model (falling back to the secondary one) to lift module
bytecode to Move source. The call is billed from the reported token usage.
"""

from __future__ import annotations

import logging

from hydra.core.errors import DecompileError, DecompileUnavailable
from hydra.core.llm_client import LLMClient
from hydra.decompiler.base import DecompileResult, Decompiler

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You are a Move bytecode decompiler. You receive the hex encoding of one
compiled Move module and reconstruct equivalent Move source.

Rules:
- Emit exactly one `module <address>::<name> { ... }` block.
- Keep every struct with its fields and abilities, and every function with its
  visibility (`public`, `public(friend)`, private), parameters, return type and
  a body that preserves data flow: which fields are borrowed, mutably or not,
  which functions are called and what is returned.
- Use fully qualified names for anything defined outside the module.

Respond with JSON only:
{"source": "<move source>", "confidence": <0.0-1.0 fidelity estimate>}
"""

# Leaves room for the prompt within typical context windows
MAX_BYTECODE_BYTES = 48_000


class LLMDecompiler(Decompiler):
    name = "llm"

    def __init__(self, client: LLMClient | None = None) -> None:
        self._client = client or LLMClient()

    async def decompile(self, bytecode: bytes) -> DecompileResult:
        if len(bytecode) > MAX_BYTECODE_BYTES:
            raise DecompileError(
                f"bytecode of {len(bytecode)} bytes exceeds the LLM decompiler limit",
                size=len(bytecode),
            )
        try:
            response = await self._client.analyze(
                SYSTEM_PROMPT,
                f"Module bytecode (hex):\n{bytecode.hex()}",
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            raise DecompileUnavailable(f"LLM decompiler failed: {exc}") from exc

        data = response.data
        source = data.get("source")
        if data.get("parse_error") or not isinstance(source, str) or not source.strip():
            raise DecompileError(
                "LLM response did not contain decompiled source",
                model=response.model,
                cost_usd=response.cost_usd,
            )
        try:
            confidence = min(max(float(data.get("confidence", 0.5)), 0.0), 1.0)
        except (TypeError, ValueError):
            confidence = 0.5

        logger.info(
            "LLM decompilation via %s: %d in / %d out tokens",
            response.model, response.input_tokens, response.output_tokens,
            extra={"cost_usd": round(response.cost_usd, 6)},
        )
        return DecompileResult(
            representation=source,
            confidence=confidence,
            cost_usd=response.cost_usd,
        )
