"""Daily cost ledger for metered decompiler calls.

Spend moves through two stages. ``reserve`` sets the estimated cost aside
before a call is made and refuses when ``spent + reserved + estimate`` would
exceed the daily budget; the check and the increment happen under one lock.
``commit`` turns a reservation into spend once the call was attempted
(whatever its outcome), ``release`` returns it when the run is cancelled
before the call completed.

The ledger day is the UTC calendar day of the injected clock. Crossing
``alert_threshold_usd`` emits one alert per ledger day.
"""

from __future__ import annotations

import enum
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from hydra.core.config import CostMonitoringSettings
from hydra.core.errors import DecompileBudgetExhausted

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class ReservationState(str, enum.Enum):
    RESERVED = "reserved"
    COMMITTED = "committed"
    RELEASED = "released"


@dataclass
class Reservation:
    id: int
    amount_usd: float
    state: ReservationState = ReservationState.RESERVED


@dataclass(frozen=True)
class BudgetAlert:
    day: int
    spent_usd: float
    threshold_usd: float
    budget_usd: float
    raised_at: float


@dataclass
class CostLedger:
    daily_budget_usd: float
    alert_threshold_usd: float
    clock: Callable[[], float] = time.time
    on_alert: Callable[[BudgetAlert], None] | None = None
    spent_usd_today: float = 0.0
    reserved_usd: float = 0.0
    alerts: list[BudgetAlert] = field(default_factory=list)
    _day: int = -1
    _alerted_day: int = -1
    _ids: itertools.count = field(default_factory=itertools.count, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def from_settings(
        cls,
        settings: CostMonitoringSettings,
        clock: Callable[[], float] = time.time,
        on_alert: Callable[[BudgetAlert], None] | None = None,
    ) -> "CostLedger":
        return cls(
            daily_budget_usd=settings.daily_budget_usd,
            alert_threshold_usd=settings.alert_threshold_usd,
            clock=clock,
            on_alert=on_alert,
        )

    def _roll(self) -> None:
        """Reset spend when the clock has entered a new ledger day. Caller holds the lock."""
        day = int(self.clock() // SECONDS_PER_DAY)
        if day != self._day:
            if self._day >= 0:
                logger.info("Cost ledger day rolled over; spent %.2f USD yesterday", self.spent_usd_today)
            self._day = day
            self.spent_usd_today = 0.0

    def reserve(self, amount_usd: float) -> Reservation:
        with self._lock:
            self._roll()
            if self.spent_usd_today + self.reserved_usd + amount_usd > self.daily_budget_usd:
                raise DecompileBudgetExhausted(
                    f"daily decompilation budget of {self.daily_budget_usd:.2f} USD exhausted "
                    f"(spent {self.spent_usd_today:.2f}, reserved {self.reserved_usd:.2f})",
                    spent_usd=self.spent_usd_today,
                    reserved_usd=self.reserved_usd,
                )
            self.reserved_usd += amount_usd
            return Reservation(next(self._ids), amount_usd)

    def commit(self, reservation: Reservation, actual_usd: float | None = None) -> None:
        """Record spend for an attempted call; ``actual_usd`` defaults to the estimate."""
        alert = None
        with self._lock:
            if reservation.state is not ReservationState.RESERVED:
                return
            reservation.state = ReservationState.COMMITTED
            self.reserved_usd = max(0.0, self.reserved_usd - reservation.amount_usd)
            self._roll()
            self.spent_usd_today += reservation.amount_usd if actual_usd is None else actual_usd
            if self.spent_usd_today >= self.alert_threshold_usd and self._alerted_day != self._day:
                self._alerted_day = self._day
                alert = BudgetAlert(
                    day=self._day,
                    spent_usd=self.spent_usd_today,
                    threshold_usd=self.alert_threshold_usd,
                    budget_usd=self.daily_budget_usd,
                    raised_at=self.clock(),
                )
                self.alerts.append(alert)

        if alert is not None:
            logger.warning(
                "Decompilation spend %.2f USD crossed the alert threshold of %.2f USD",
                alert.spent_usd, alert.threshold_usd,
                extra={"spent_usd": alert.spent_usd},
            )
            if self.on_alert is not None:
                self.on_alert(alert)

    def release(self, reservation: Reservation) -> None:
        with self._lock:
            if reservation.state is not ReservationState.RESERVED:
                return
            reservation.state = ReservationState.RELEASED
            self.reserved_usd = max(0.0, self.reserved_usd - reservation.amount_usd)

    @property
    def remaining_usd(self) -> float:
        with self._lock:
            self._roll()
            return max(0.0, self.daily_budget_usd - self.spent_usd_today - self.reserved_usd)

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            self._roll()
            return {
                "spent_usd_today": round(self.spent_usd_today, 6),
                "reserved_usd": round(self.reserved_usd, 6),
                "daily_budget_usd": self.daily_budget_usd,
                "alert_threshold_usd": self.alert_threshold_usd,
            }
