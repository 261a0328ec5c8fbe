"""Budget- and cache-guarded access to the decompiler.

``DecompilationContext`` is owned by one certification run. It combines the
result cache, the cost ledger, a single-flight table (concurrent requests for
the same bytecode share one decompiler call) and the set of fingerprints that
already failed during the run, which are not tried again.

Inside a worker the cache and the ledger belong to the process, not to the
run: ``shared_state`` creates them once and every ``DecompilationContext.for_run``
borrows them, so the daily budget and cached results carry over from one
batch to the next. The decompiler client, the single-flight table and the
failure memory are rebuilt per run because they are bound to the run's event
loop.

Per fingerprint::

    cache hit within TTL         -> reuse, zero cost
    miss                         -> reserve estimate on the ledger
                                    -> decompile under a timeout
                                    -> commit spend, store entry
    timeout / unavailable        -> retry once with backoff
    budget exhausted / failure   -> provisional result stands
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from hydra.core.config import Settings, get_settings
from hydra.core.errors import (
    DecompileBudgetExhausted,
    DecompileError,
    DecompileTimeout,
    DecompileUnavailable,
)
from hydra.decompiler.base import DecompileResult, Decompiler
from hydra.decompiler.cache import DecompilationCache, build_cache, fingerprint
from hydra.decompiler.ledger import BudgetAlert, CostLedger

logger = logging.getLogger(__name__)


@dataclass
class DecompileOutcome:
    """What a decompilation request produced."""
    fingerprint: str
    result: DecompileResult | None = None
    from_cache: bool = False
    error: DecompileError | None = None
    attempts: int = 0
    cost_usd: float = 0.0

    @property
    def ok(self) -> bool:
        return self.result is not None


def build_decompiler(settings: Settings) -> Decompiler:
    """Adapter selected by ``mad.decompiler``."""
    if settings.mad.decompiler == "llm":
        from hydra.core.llm_client import LLMClient
        from hydra.decompiler.llm import LLMDecompiler
        return LLMDecompiler(LLMClient(settings))
    from hydra.decompiler.http import HttpDecompiler
    return HttpDecompiler(settings=settings)


_shared: tuple[DecompilationCache, CostLedger] | None = None
_shared_lock = threading.Lock()


def shared_state(settings: Settings | None = None) -> tuple[DecompilationCache, CostLedger]:
    """Process-wide result cache and cost ledger, created on first use.

    The ledger resets its own spend when the UTC day changes, so the pair is
    never rebuilt while the process lives.
    """
    global _shared
    with _shared_lock:
        if _shared is None:
            settings = settings or get_settings()
            _shared = (
                build_cache(settings),
                CostLedger.from_settings(settings.mad.cost_monitoring),
            )
            logger.info(
                "Initialised decompilation cache (%s) and cost ledger (%.2f USD/day)",
                settings.mad.cache_backend,
                settings.mad.cost_monitoring.daily_budget_usd,
            )
        return _shared


def reset_shared_state() -> None:
    """Forget the process-wide cache and ledger (worker restart, tests)."""
    global _shared
    with _shared_lock:
        _shared = None


class DecompilationContext:
    """One run's view of a cache and ledger, with its own single-flight and failure memory."""

    def __init__(
        self,
        decompiler: Decompiler,
        cache: DecompilationCache,
        ledger: CostLedger,
        *,
        timeout_seconds: float = 60.0,
        max_retries: int = 1,
        retry_base_delay: float = 1.0,
        estimated_call_cost_usd: float = 0.25,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.decompiler = decompiler
        self.cache = cache
        self.ledger = ledger
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.estimated_call_cost_usd = estimated_call_cost_usd
        self._sleep = sleep
        self._inflight: dict[str, asyncio.Future[DecompileOutcome]] = {}
        self._failed: dict[str, DecompileError] = {}
        self.calls = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        decompiler: Decompiler | None = None,
        cache: DecompilationCache | None = None,
        clock: Callable[[], float] = time.time,
        on_alert: Callable[[BudgetAlert], None] | None = None,
        ledger: CostLedger | None = None,
    ) -> "DecompilationContext":
        settings = settings or get_settings()
        mad = settings.mad
        return cls(
            decompiler or build_decompiler(settings),
            cache or build_cache(settings, clock),
            ledger or CostLedger.from_settings(mad.cost_monitoring, clock, on_alert),
            timeout_seconds=mad.timeout_seconds,
            max_retries=mad.max_retries,
            retry_base_delay=mad.retry_base_delay,
            estimated_call_cost_usd=mad.cost_monitoring.estimated_call_cost_usd,
        )

    @classmethod
    def for_run(
        cls,
        settings: Settings | None = None,
        decompiler: Decompiler | None = None,
    ) -> "DecompilationContext":
        """Context for one run that borrows the process-wide cache and ledger."""
        settings = settings or get_settings()
        cache, ledger = shared_state(settings)
        return cls.from_settings(settings, decompiler=decompiler, cache=cache, ledger=ledger)

    def has_failed(self, fp: str) -> bool:
        return fp in self._failed

    async def decompile(self, bytecode: bytes) -> DecompileOutcome:
        fp = fingerprint(bytecode)
        failed = self._failed.get(fp)
        if failed is not None:
            return DecompileOutcome(fp, error=failed)

        pending = self._inflight.get(fp)
        if pending is not None:
            logger.debug("Joining in-flight decompilation", extra={"fingerprint": fp[:16]})
            return await asyncio.shield(pending)

        future: asyncio.Future[DecompileOutcome] = asyncio.get_running_loop().create_future()
        self._inflight[fp] = future
        try:
            outcome = await self._resolve(fp, bytecode)
        except asyncio.CancelledError:
            future.set_result(DecompileOutcome(
                fp, error=DecompileUnavailable("decompilation cancelled", fingerprint=fp),
            ))
            raise
        except Exception as exc:
            future.set_result(DecompileOutcome(fp, error=DecompileError(str(exc), fingerprint=fp)))
            raise
        else:
            future.set_result(outcome)
            return outcome
        finally:
            self._inflight.pop(fp, None)

    async def _resolve(self, fp: str, bytecode: bytes) -> DecompileOutcome:
        entry = await self.cache.get(fp)
        if entry is not None:
            logger.debug("Decompilation cache hit", extra={"fingerprint": fp[:16]})
            return DecompileOutcome(fp, entry.as_result(), from_cache=True)

        attempts = 0
        spent = 0.0
        error: DecompileError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                reservation = self.ledger.reserve(self.estimated_call_cost_usd)
            except DecompileBudgetExhausted as exc:
                error = exc
                break

            attempts += 1
            self.calls += 1
            started = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    self.decompiler.decompile(bytecode), timeout=self.timeout_seconds,
                )
            except asyncio.CancelledError:
                self.ledger.release(reservation)
                raise
            except asyncio.TimeoutError:
                self.ledger.commit(reservation)
                error = DecompileTimeout(
                    f"no answer within {self.timeout_seconds:.0f}s", fingerprint=fp,
                )
            except DecompileError as exc:
                self.ledger.commit(reservation)
                error = exc
            except Exception as exc:
                self.ledger.commit(reservation)
                error = DecompileError(f"decompiler failed: {exc}", fingerprint=fp)
            else:
                self.ledger.commit(reservation, result.cost_usd)
                await self.cache.put(fp, result)
                logger.info(
                    "Decompiled module bytecode (confidence %.2f)", result.confidence,
                    extra={
                        "fingerprint": fp[:16],
                        "cost_usd": result.cost_usd,
                        "duration_ms": round((time.monotonic() - started) * 1000),
                    },
                )
                return DecompileOutcome(
                    fp, result, attempts=attempts, cost_usd=spent + result.cost_usd,
                )

            spent += reservation.amount_usd
            if not error.retryable or attempt >= self.max_retries:
                break
            delay = self.retry_base_delay * (2 ** attempt)
            logger.warning(
                "Decompilation attempt %d failed (%s), retrying in %.1fs",
                attempt + 1, error.to_diagnostic(), delay,
                extra={"fingerprint": fp[:16]},
            )
            await self._sleep(delay)

        assert error is not None
        self._failed[fp] = error
        logger.warning(
            "Decompilation unavailable, keeping provisional result: %s", error.to_diagnostic(),
            extra={"fingerprint": fp[:16]},
        )
        return DecompileOutcome(fp, error=error, attempts=attempts, cost_usd=spent)

    async def close(self) -> None:
        """Release loop-bound connections. Cached entries and spend survive."""
        await self.decompiler.close()
        await self.cache.close()
