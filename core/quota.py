"""
Quota Ledger — daily spend tracking for paid external services.

Every paid call asks ``can_afford(estimate)`` first and reports the actual
cost through ``record_usage`` afterwards. Totals roll over at local
midnight. Crossing the warning / critical fraction of the daily limit is
logged once per day.

Rate card (USD):
    tts           0.0003 per character
    tts stream    0.0005 per character
    voice clone   0.10 per clone
    llm generate  (input_chars/1000) × 0.000125 + (output_chars/1000) × 0.000375
    anything else 0.01
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable

logger = structlog.get_logger()


RATES = {
    "tts": {
        "synthesize": 0.0003,      # per character
        "stream": 0.0005,          # per character
        "voice_clone": 0.10,       # flat
    },
    "llm": {
        "input_per_1k": 0.000125,
        "output_per_1k": 0.000375,
    },
}
DEFAULT_COST = 0.01


def estimate_cost(service: str, operation: str, *, characters: int = 0,
                  input_length: int = 0, output_length: int = 0) -> float:
    """Estimated USD cost of one call."""
    if service == "tts":
        if operation == "voice_clone":
            return RATES["tts"]["voice_clone"]
        rate = RATES["tts"].get(operation)
        if rate is not None:
            return characters * rate
    elif service == "llm" and operation in ("generate", "emotion", "greeting"):
        return (
            (input_length / 1000.0) * RATES["llm"]["input_per_1k"]
            + (output_length / 1000.0) * RATES["llm"]["output_per_1k"]
        )
    return DEFAULT_COST


class QuotaLedger(ABC):
    """Interface the orchestrator uses to gate paid calls."""

    @abstractmethod
    def can_afford(self, estimate: float) -> bool:
        ...

    @abstractmethod
    def record_usage(self, service: str, cost: float, session_id: str = "",
                     operation: str = "") -> None:
        ...


@dataclass
class UsageRecord:
    service: str
    cost: float
    session_id: str
    operation: str
    day: date


class InMemoryQuotaLedger(QuotaLedger):
    """Per-service daily totals held in memory."""

    def __init__(
        self,
        daily_limit: float = 50.0,
        warning_threshold: float = 0.8,
        critical_threshold: float = 0.95,
        today: Callable[[], date] = date.today,
    ):
        if daily_limit <= 0:
            raise ValueError("daily_limit must be positive")
        self.daily_limit = daily_limit
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self._today = today
        self._day = today()
        self._by_service: dict[str, float] = defaultdict(float)
        self._records: list[UsageRecord] = []
        self._alerted: set[str] = set()

    def _roll_over(self) -> None:
        today = self._today()
        if today != self._day:
            logger.info("quota_day_rollover", previous=self._day.isoformat(),
                        spent=round(self.total_spent, 6))
            self._day = today
            self._by_service.clear()
            self._records = [r for r in self._records if r.day == today]
            self._alerted.clear()

    @property
    def total_spent(self) -> float:
        return sum(self._by_service.values())

    def get_remaining(self) -> float:
        self._roll_over()
        return max(0.0, self.daily_limit - self.total_spent)

    def can_afford(self, estimate: float) -> bool:
        return self.get_remaining() >= max(0.0, estimate)

    def record_usage(self, service: str, cost: float, session_id: str = "",
                     operation: str = "") -> None:
        self._roll_over()
        cost = max(0.0, cost)
        self._by_service[service] += cost
        self._records.append(UsageRecord(service, cost, session_id, operation, self._day))
        logger.debug("quota_usage_recorded", service=service, operation=operation,
                     cost=round(cost, 6), total=round(self.total_spent, 6))
        self._check_thresholds()

    def _check_thresholds(self) -> None:
        fraction = self.total_spent / self.daily_limit
        if fraction >= self.critical_threshold and "critical" not in self._alerted:
            self._alerted.update({"critical", "warning"})
            logger.warning("quota_critical", used_fraction=round(fraction, 3),
                           daily_limit=self.daily_limit)
        elif fraction >= self.warning_threshold and "warning" not in self._alerted:
            self._alerted.add("warning")
            logger.warning("quota_warning", used_fraction=round(fraction, 3),
                           daily_limit=self.daily_limit)

    def get_usage_statistics(self) -> dict[str, Any]:
        self._roll_over()
        spent = self.total_spent
        by_session: dict[str, float] = defaultdict(float)
        for record in self._records:
            if record.session_id:
                by_session[record.session_id] += record.cost
        fraction = spent / self.daily_limit
        return {
            "date": self._day.isoformat(),
            "daily_limit": self.daily_limit,
            "spent": round(spent, 6),
            "remaining": round(max(0.0, self.daily_limit - spent), 6),
            "used_fraction": round(fraction, 4),
            "status": (
                "critical" if fraction >= self.critical_threshold
                else "warning" if fraction >= self.warning_threshold
                else "ok"
            ),
            "by_service": {k: round(v, 6) for k, v in self._by_service.items()},
            "by_session": {k: round(v, 6) for k, v in by_session.items()},
            "calls": len(self._records),
        }
