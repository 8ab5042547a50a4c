"""
Tests for the quota ledger, retry policy and quota guard.

Coverage:
- Rate card estimates
- Ledger affordability, per-day rollover and threshold status
- Exponential backoff schedule and transient-only retry
- Guard fallback on exhausted quota or failed call, cost recording on success
- Error classification
"""
from datetime import date

import httpx
import pytest

from core.errors import (
    InvalidInput, ServiceError, TransientServiceFailure, classify_http_status, is_transient,
)
from core.quota import DEFAULT_COST, InMemoryQuotaLedger, estimate_cost
from core.retry import QuotaGuard, RetryPolicy


class Flaky:
    """Fails ``failures`` times with ``error`` then returns ``result``."""

    def __init__(self, failures: int, error: Exception, result="ok"):
        self.failures = failures
        self.error = error
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


@pytest.fixture
def policy(fake_sleep):
    return RetryPolicy(max_attempts=3, sleep=fake_sleep)


# ── Rate card ────────────────────────────────────────────────


class TestEstimateCost:
    def test_tts_per_character(self):
        assert estimate_cost("tts", "synthesize", characters=100) == pytest.approx(0.03)
        assert estimate_cost("tts", "stream", characters=100) == pytest.approx(0.05)

    def test_voice_clone_flat(self):
        assert estimate_cost("tts", "voice_clone", characters=10_000) == pytest.approx(0.10)

    def test_llm_by_length(self):
        cost = estimate_cost("llm", "generate", input_length=1000, output_length=1000)
        assert cost == pytest.approx(0.0005)

    def test_unknown_operation_uses_default(self):
        assert estimate_cost("stt", "transcribe") == DEFAULT_COST


# ── Ledger ───────────────────────────────────────────────────


class TestLedger:
    def test_affordability(self):
        ledger = InMemoryQuotaLedger(daily_limit=1.0)
        assert ledger.can_afford(1.0)
        ledger.record_usage("tts", 0.75)
        assert ledger.get_remaining() == pytest.approx(0.25)
        assert not ledger.can_afford(0.3)

    def test_rollover_at_day_change(self):
        today = [date(2024, 3, 1)]
        ledger = InMemoryQuotaLedger(daily_limit=1.0, today=lambda: today[0])
        ledger.record_usage("llm", 0.9, session_id="s1")
        assert not ledger.can_afford(0.2)

        today[0] = date(2024, 3, 2)
        assert ledger.can_afford(0.2)
        stats = ledger.get_usage_statistics()
        assert stats["date"] == "2024-03-02"
        assert stats["spent"] == 0.0
        assert stats["calls"] == 0

    def test_statistics_by_service_and_session(self):
        ledger = InMemoryQuotaLedger(daily_limit=10.0)
        ledger.record_usage("tts", 1.0, session_id="a")
        ledger.record_usage("llm", 0.5, session_id="a")
        ledger.record_usage("tts", 8.0, session_id="b")
        stats = ledger.get_usage_statistics()
        assert stats["by_service"] == {"tts": 9.0, "llm": 0.5}
        assert stats["by_session"] == {"a": 1.5, "b": 8.0}
        assert stats["status"] == "warning"

    def test_negative_cost_ignored(self):
        ledger = InMemoryQuotaLedger(daily_limit=1.0)
        ledger.record_usage("tts", -5.0)
        assert ledger.total_spent == 0.0

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            InMemoryQuotaLedger(daily_limit=0)


# ── Retry policy ─────────────────────────────────────────────


class TestRetryPolicy:
    def test_backoff_schedule(self, policy):
        assert policy.backoff_schedule() == [1.0, 2.0]
        assert RetryPolicy(max_attempts=5).backoff_schedule() == [1.0, 2.0, 4.0, 4.0]

    @pytest.mark.asyncio
    async def test_transient_failures_retried_with_backoff(self, policy, fake_sleep):
        fn = Flaky(2, TransientServiceFailure("503"))
        assert await policy.run(fn) == "ok"
        assert fn.calls == 3
        assert fake_sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, policy, fake_sleep):
        fn = Flaky(1, ServiceError("bad api key"))
        with pytest.raises(ServiceError):
            await policy.run(fn)
        assert fn.calls == 1
        assert fake_sleep.calls == []

    @pytest.mark.asyncio
    async def test_exhausted_attempts_reraise_last_error(self, policy):
        fn = Flaky(10, TransientServiceFailure("still down"))
        with pytest.raises(TransientServiceFailure):
            await policy.run(fn)
        assert fn.calls == 3

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


# ── Quota guard ──────────────────────────────────────────────


class TestQuotaGuard:
    @pytest.mark.asyncio
    async def test_exhausted_quota_returns_fallback_without_calling(self, policy):
        ledger = InMemoryQuotaLedger(daily_limit=0.01)
        ledger.record_usage("tts", 0.01)
        guard = QuotaGuard(ledger, policy)
        fn = Flaky(0, RuntimeError())

        result = await guard.call("llm", "generate", fn, estimate=0.001, fallback="offline")

        assert result == "offline"
        assert fn.calls == 0
        assert guard.fallbacks == 1

    @pytest.mark.asyncio
    async def test_actual_cost_recorded(self, policy):
        ledger = InMemoryQuotaLedger(daily_limit=5.0)
        guard = QuotaGuard(ledger, policy)

        result = await guard.call("tts", "synthesize", Flaky(0, RuntimeError(), b"pcm"),
                                  estimate=1.0, fallback=None,
                                  actual_cost=lambda audio: 0.25, session_id="s1")

        assert result == b"pcm"
        assert ledger.total_spent == pytest.approx(0.25)
        assert ledger.get_usage_statistics()["by_session"] == {"s1": 0.25}

    @pytest.mark.asyncio
    async def test_estimate_recorded_without_actual_cost(self, policy):
        ledger = InMemoryQuotaLedger(daily_limit=5.0)
        guard = QuotaGuard(ledger, policy)
        await guard.call("llm", "generate", Flaky(0, RuntimeError()), estimate=0.002, fallback="")
        assert ledger.total_spent == pytest.approx(0.002)

    @pytest.mark.asyncio
    async def test_failed_call_records_nothing(self, policy, fake_sleep):
        ledger = InMemoryQuotaLedger(daily_limit=5.0)
        guard = QuotaGuard(ledger, policy)
        fn = Flaky(5, TransientServiceFailure("timeout"))

        result = await guard.call("llm", "generate", fn, estimate=0.5, fallback="canned")

        assert result == "canned"
        assert fn.calls == 3
        assert fake_sleep.calls == [1.0, 2.0]
        assert ledger.total_spent == 0.0
        assert guard.fallbacks == 1

    def test_check_raises_quota_exceeded(self, policy):
        from core.errors import QuotaExceeded

        guard = QuotaGuard(InMemoryQuotaLedger(daily_limit=0.5), policy)
        guard.check("tts", 0.5)
        with pytest.raises(QuotaExceeded) as exc_info:
            guard.check("tts", 0.6)
        assert exc_info.value.service == "tts"
        assert exc_info.value.remaining == pytest.approx(0.5)


# ── Classification ───────────────────────────────────────────


class TestClassification:
    def test_trainer_errors_use_flag(self):
        assert is_transient(TransientServiceFailure("x"))
        assert not is_transient(ServiceError("x"))
        assert not is_transient(InvalidInput("x"))

    def test_httpx_errors(self):
        request = httpx.Request("GET", "https://api.example.com")
        assert is_transient(httpx.ConnectTimeout("slow", request=request))
        assert is_transient(httpx.ConnectError("refused", request=request))
        busy = httpx.Response(503, request=request)
        assert is_transient(httpx.HTTPStatusError("busy", request=request, response=busy))
        bad = httpx.Response(400, request=request)
        assert not is_transient(httpx.HTTPStatusError("bad", request=request, response=bad))

    def test_message_markers(self):
        assert is_transient(RuntimeError("Rate limit reached"))
        assert is_transient(RuntimeError("upstream UNAVAILABLE"))
        assert not is_transient(ValueError("malformed prompt"))

    @pytest.mark.parametrize("status, expected", [
        (200, None),
        (429, TransientServiceFailure),
        (503, TransientServiceFailure),
        (408, TransientServiceFailure),
        (401, ServiceError),
        (400, ServiceError),
    ])
    def test_http_status_mapping(self, status, expected):
        error = classify_http_status(status, "tts")
        if expected is None:
            assert error is None
        else:
            assert type(error) is expected
