"""Remote decompilation service adapter (httpx)."""

from __future__ import annotations

import logging

import httpx
from pydantic import BaseModel, Field, ValidationError

from hydra.core.config import Settings, get_settings
from hydra.core.errors import DecompileError, DecompileTimeout, DecompileUnavailable
from hydra.decompiler.base import DecompileResult, Decompiler

logger = logging.getLogger(__name__)


class DecompileRequest(BaseModel):
    bytecode: str  # hex
    format: str = "move-source"


class DecompileResponse(BaseModel):
    source: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    cost_usd: float = Field(default=0.0, ge=0.0)


class HttpDecompiler(Decompiler):
    """Posts bytecode to a decompilation service and reads back Move source.

    The service answers ``POST /v1/decompile`` with
    ``{"source": ..., "confidence": ..., "cost_usd": ...}``.
    """

    name = "http"

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.base_url = (base_url or settings.mad.decompiler_url).rstrip("/")
        # The guard enforces the overall deadline; this only bounds a stuck socket
        self._client = client or httpx.AsyncClient(timeout=settings.mad.timeout_seconds)

    async def decompile(self, bytecode: bytes) -> DecompileResult:
        payload = DecompileRequest(bytecode=bytecode.hex())
        try:
            response = await self._client.post(
                f"{self.base_url}/v1/decompile",
                json=payload.model_dump(),
            )
        except httpx.TimeoutException as exc:
            raise DecompileTimeout(f"decompiler timed out: {exc}", url=self.base_url) from exc
        except httpx.TransportError as exc:
            raise DecompileUnavailable(f"decompiler unreachable: {exc}", url=self.base_url) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise DecompileUnavailable(
                f"decompiler returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise DecompileError(
                f"decompiler rejected the request with HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            body = DecompileResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise DecompileError(f"malformed decompiler response: {exc.error_count()} error(s)") from exc

        logger.debug(
            "Decompiled %d bytes with confidence %.2f", len(bytecode), body.confidence,
            extra={"cost_usd": body.cost_usd},
        )
        return DecompileResult(
            representation=body.source,
            confidence=body.confidence,
            cost_usd=body.cost_usd,
        )

    async def close(self) -> None:
        await self._client.aclose()
