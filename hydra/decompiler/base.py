"""Decompiler capability interface."""

from __future__ import annotations

import abc
from dataclasses import dataclass


@dataclass(frozen=True)
class DecompileResult:
    """Decompiler output for one module's bytecode.

    ``representation`` is Move-like source text readable by the Move frontend.
    ``confidence`` is the decompiler's own estimate of fidelity in [0, 1].
    """
    representation: str
    confidence: float
    cost_usd: float = 0.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        if self.cost_usd < 0:
            raise ValueError(f"cost_usd must be non-negative, got {self.cost_usd}")


class Decompiler(abc.ABC):
    """Turns module bytecode into a source-like representation."""

    name: str = "decompiler"

    @abc.abstractmethod
    async def decompile(self, bytecode: bytes) -> DecompileResult:
        """Decompile ``bytecode`` or raise a ``DecompileError`` subclass."""

    async def close(self) -> None:
        """Release network resources held by the adapter."""
