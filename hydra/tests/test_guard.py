"""Tests for the guarded decompilation context."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from hydra.core.errors import (
    DecompileBudgetExhausted,
    DecompileError,
    DecompileTimeout,
    DecompileUnavailable,
)
from hydra.decompiler.cache import DecompilationCache, MemoryCacheBackend, fingerprint
from hydra.decompiler.guard import DecompilationContext, build_decompiler, reset_shared_state
from hydra.decompiler.http import HttpDecompiler
from hydra.decompiler.ledger import CostLedger
from hydra.decompiler.llm import LLMDecompiler
from hydra.tests.factories import FakeDecompiler

BYTECODE = b"\xa1\x1c\xeb\x0b\x06\x00vault"
SOURCE = "module 0xcafe::vault {}"


def _context(decompiler, clock, budget=1.0, **kwargs) -> DecompilationContext:
    kwargs.setdefault("timeout_seconds", 1.0)
    kwargs.setdefault("retry_base_delay", 0.5)
    kwargs.setdefault("sleep", AsyncMock())
    return DecompilationContext(
        decompiler,
        DecompilationCache(MemoryCacheBackend(), clock=clock),
        CostLedger(daily_budget_usd=budget, alert_threshold_usd=budget, clock=clock),
        estimated_call_cost_usd=0.25,
        **kwargs,
    )


class TestSuccess:
    @pytest.mark.asyncio
    async def test_decompile_and_cache(self, clock):
        decompiler = FakeDecompiler(SOURCE, confidence=0.9, cost_usd=0.1)
        ctx = _context(decompiler, clock)

        first = await ctx.decompile(BYTECODE)
        assert first.ok
        assert first.fingerprint == fingerprint(BYTECODE)
        assert first.result.representation == SOURCE
        assert first.attempts == 1
        assert first.cost_usd == pytest.approx(0.1)
        assert not first.from_cache
        assert ctx.ledger.spent_usd_today == pytest.approx(0.1)

        second = await ctx.decompile(BYTECODE)
        assert second.from_cache
        assert second.result.cost_usd == 0.0
        assert decompiler.calls == 1
        assert ctx.calls == 1

    @pytest.mark.asyncio
    async def test_cached_result_needs_no_budget(self, clock):
        ctx = _context(FakeDecompiler(SOURCE, cost_usd=0.25), clock, budget=0.25)
        assert (await ctx.decompile(BYTECODE)).ok
        again = await ctx.decompile(BYTECODE)
        assert again.ok and again.from_cache


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_call(self, clock):
        decompiler = FakeDecompiler(SOURCE, delay=0.05)
        ctx = _context(decompiler, clock, budget=0.25)
        a, b, c = await asyncio.gather(*(ctx.decompile(BYTECODE) for _ in range(3)))
        assert decompiler.calls == 1
        assert a.ok and b.ok and c.ok
        assert a.result == b.result == c.result

    @pytest.mark.asyncio
    async def test_different_bytecode_is_not_shared(self, clock):
        decompiler = FakeDecompiler(SOURCE, delay=0.01)
        ctx = _context(decompiler, clock)
        await asyncio.gather(ctx.decompile(BYTECODE), ctx.decompile(BYTECODE + b"\x01"))
        assert decompiler.calls == 2


class TestRetries:
    @pytest.mark.asyncio
    async def test_retry_once_after_unavailable(self, clock):
        sleep = AsyncMock()
        decompiler = FakeDecompiler(SOURCE, failures=[DecompileUnavailable("503")])
        ctx = _context(decompiler, clock, sleep=sleep)

        outcome = await ctx.decompile(BYTECODE)
        assert outcome.ok
        assert outcome.attempts == 2
        assert decompiler.calls == 2
        sleep.assert_awaited_once_with(0.5)
        # The failed attempt is billed at the estimate
        assert ctx.ledger.spent_usd_today == pytest.approx(0.25 + 0.25)

    @pytest.mark.asyncio
    async def test_at_most_one_retry(self, clock):
        decompiler = FakeDecompiler(SOURCE, failures=[DecompileUnavailable("a"), DecompileUnavailable("b")])
        ctx = _context(decompiler, clock)
        outcome = await ctx.decompile(BYTECODE)
        assert not outcome.ok
        assert isinstance(outcome.error, DecompileUnavailable)
        assert outcome.attempts == 2
        assert decompiler.calls == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_fast(self, clock):
        decompiler = FakeDecompiler(SOURCE, failures=[DecompileError("bad request")])
        ctx = _context(decompiler, clock)
        outcome = await ctx.decompile(BYTECODE)
        assert not outcome.ok
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self, clock):
        decompiler = FakeDecompiler(SOURCE, failures=[RuntimeError("boom")])
        ctx = _context(decompiler, clock)
        outcome = await ctx.decompile(BYTECODE)
        assert type(outcome.error) is DecompileError
        assert "boom" in outcome.error.message


class TestTimeout:
    @pytest.mark.asyncio
    async def test_timeout_then_give_up(self, clock):
        decompiler = FakeDecompiler(SOURCE, delay=1.0)
        ctx = _context(decompiler, clock, timeout_seconds=0.01)
        outcome = await ctx.decompile(BYTECODE)
        assert isinstance(outcome.error, DecompileTimeout)
        assert outcome.attempts == 2
        assert outcome.cost_usd == pytest.approx(0.5)
        assert ctx.ledger.reserved_usd == 0.0


class TestBudget:
    @pytest.mark.asyncio
    async def test_exhausted_budget_makes_no_call(self, clock):
        decompiler = FakeDecompiler(SOURCE)
        ctx = _context(decompiler, clock, budget=0.1)
        outcome = await ctx.decompile(BYTECODE)
        assert isinstance(outcome.error, DecompileBudgetExhausted)
        assert outcome.attempts == 0
        assert decompiler.calls == 0

    @pytest.mark.asyncio
    async def test_retry_stops_when_budget_runs_out(self, clock):
        decompiler = FakeDecompiler(SOURCE, failures=[DecompileUnavailable("503")])
        ctx = _context(decompiler, clock, budget=0.25)
        outcome = await ctx.decompile(BYTECODE)
        assert isinstance(outcome.error, DecompileBudgetExhausted)
        assert decompiler.calls == 1


class TestFailureMemory:
    @pytest.mark.asyncio
    async def test_failed_fingerprint_is_not_retried_within_run(self, clock):
        decompiler = FakeDecompiler(SOURCE, failures=[DecompileError("bad")])
        ctx = _context(decompiler, clock)
        await ctx.decompile(BYTECODE)
        assert ctx.has_failed(fingerprint(BYTECODE))

        again = await ctx.decompile(BYTECODE)
        assert not again.ok
        assert again.attempts == 0
        assert decompiler.calls == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_releases_reservation(self, clock):
        decompiler = FakeDecompiler(SOURCE, delay=0.5)
        ctx = _context(decompiler, clock, timeout_seconds=5.0)
        task = asyncio.ensure_future(ctx.decompile(BYTECODE))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert ctx.ledger.reserved_usd == 0.0
        assert ctx.ledger.spent_usd_today == 0.0
        assert not ctx.has_failed(fingerprint(BYTECODE))


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_close(self, clock):
        decompiler = FakeDecompiler(SOURCE)
        ctx = _context(decompiler, clock)
        await ctx.close()
        assert decompiler.closed

    def test_from_settings(self, make_settings, mad_enabled, clock):
        ctx = DecompilationContext.from_settings(
            make_settings(mad=mad_enabled), decompiler=FakeDecompiler(), clock=clock,
        )
        assert ctx.max_retries == 1
        assert ctx.ledger.daily_budget_usd == 1.0
        assert ctx.estimated_call_cost_usd == 0.25

    def test_runs_share_cache_and_ledger(self, make_settings, mad_enabled):
        reset_shared_state()
        try:
            settings = make_settings(mad=mad_enabled)
            first = DecompilationContext.for_run(settings, decompiler=FakeDecompiler())
            second = DecompilationContext.for_run(settings, decompiler=FakeDecompiler())
            assert first.cache is second.cache
            assert first.ledger is second.ledger
            assert first.decompiler is not second.decompiler
            assert first._inflight is not second._inflight
        finally:
            reset_shared_state()

    def test_build_decompiler(self, make_settings, mad_enabled):
        assert isinstance(build_decompiler(make_settings(mad=mad_enabled)), HttpDecompiler)
        llm = mad_enabled.model_copy(update={"decompiler": "llm"})
        settings = make_settings(mad=llm)
        with patch("hydra.core.llm_client.LLMClient") as client_cls:
            decompiler = build_decompiler(settings)
        assert isinstance(decompiler, LLMDecompiler)
        client_cls.assert_called_once_with(settings)
