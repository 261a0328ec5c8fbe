"""Error taxonomy for the certification engine.

None of these errors is fatal to a batch. Each one is caught at the seam
where it can be degraded (a conservative abstract value, a provisional
result, an ``Indeterminate`` verdict, a cache miss) and the degradation is
recorded as a diagnostic on the emitted result.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable codes attached to errors and diagnostics."""

    MALFORMED_TYPE = "MALFORMED_TYPE"
    DECOMPILE_UNAVAILABLE = "DECOMPILE_UNAVAILABLE"
    DECOMPILE_TIMEOUT = "DECOMPILE_TIMEOUT"
    DECOMPILE_BUDGET_EXHAUSTED = "DECOMPILE_BUDGET_EXHAUSTED"
    DECOMPILE_PARSE_ERROR = "DECOMPILE_PARSE_ERROR"
    ORACLE_UNREACHABLE = "ORACLE_UNREACHABLE"
    CACHE_CORRUPTION = "CACHE_CORRUPTION"
    MANIFEST_INVALID = "MANIFEST_INVALID"
    SOURCE_PARSE_ERROR = "SOURCE_PARSE_ERROR"


class HydraError(Exception):
    """Base class for all engine errors."""

    code: ErrorCode

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_diagnostic(self) -> str:
        return f"{self.code.value}: {self.message}"


class MalformedType(HydraError):
    """A type signature could not be parsed or resolved."""

    code = ErrorCode.MALFORMED_TYPE


class SourceParseError(HydraError):
    """Move source (written or decompiled) could not be parsed."""

    code = ErrorCode.SOURCE_PARSE_ERROR


class ManifestInvalid(HydraError):
    """A compiled-module manifest failed validation."""

    code = ErrorCode.MANIFEST_INVALID


class DecompileError(HydraError):
    """Base class for decompiler failures. Callers fall back to the provisional result."""

    code = ErrorCode.DECOMPILE_UNAVAILABLE
    retryable = False


class DecompileUnavailable(DecompileError):
    """The decompiler could not be reached or rejected the request."""

    code = ErrorCode.DECOMPILE_UNAVAILABLE
    retryable = True


class DecompileTimeout(DecompileError):
    """The decompiler did not answer within the configured timeout."""

    code = ErrorCode.DECOMPILE_TIMEOUT
    retryable = True


class DecompileBudgetExhausted(DecompileError):
    """The daily decompilation budget cannot cover another call."""

    code = ErrorCode.DECOMPILE_BUDGET_EXHAUSTED


class OracleUnreachable(HydraError):
    """The invariant verifier's verdict for a module is missing."""

    code = ErrorCode.ORACLE_UNREACHABLE


class CacheCorruption(HydraError):
    """A cached entry failed its integrity check on read."""

    code = ErrorCode.CACHE_CORRUPTION
