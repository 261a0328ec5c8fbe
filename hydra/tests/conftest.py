"""Shared fixtures for the HYDRA engine test suite."""

from __future__ import annotations

from typing import Any

import pytest

from hydra.analyzer.model import Module
from hydra.core.config import CostMonitoringSettings, MadSettings, Settings
from hydra.tests.factories import FakeClock, FakeRedis
from hydra.verifier.oracle import StaticOracle


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def make_settings():
    """Settings factory that ignores any local .env file."""

    def _make(**overrides: Any) -> Settings:
        mad = overrides.pop("mad", None) or MadSettings()
        return Settings(_env_file=None, mad=mad, **overrides)

    return _make


@pytest.fixture
def mad_enabled() -> MadSettings:
    """Decompilation on, fast retries, budget for four estimated calls."""
    return MadSettings(
        enabled=True,
        retry_base_delay=0.0,
        timeout_seconds=1.0,
        cost_monitoring=CostMonitoringSettings(
            daily_budget_usd=1.0, alert_threshold_usd=0.5, estimated_call_cost_usd=0.25,
        ),
    )


class PassingOracle(StaticOracle):
    """Passes every module that has no recorded verdict."""

    async def verify(self, module: Module):
        if module.module_id not in self._verdicts:
            self.record(module.module_id, True)
        return await super().verify(module)


@pytest.fixture
def passing_oracle() -> StaticOracle:
    return PassingOracle()
