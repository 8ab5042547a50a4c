"""
Tests for the stress-mode caller queue and stamina model.

Coverage:
- Difficulty ramp and clamping
- Voice dealing and gender inference
- Stamina deltas, call-time decay and clamping
- Countdown transition order and listener notification
- Immutable stamina history
"""
import random
import statistics

import pytest
from pydantic import ValidationError

from models.schemas import Gender, SessionMetrics, VoiceInfo
from voice.callers import CallerQueue, infer_gender, stamina_delta


@pytest.fixture
def queue(clock, fake_sleep):
    return CallerQueue(inter_call_delay_s=3, clock=clock, sleep=fake_sleep, rng=random.Random(42))


def metrics(pace=165.0, confidence=50.0, clarity=50.0) -> SessionMetrics:
    return SessionMetrics(pace=pace, confidence=confidence, clarity=clarity)


# ── Generation ───────────────────────────────────────────────


class TestGeneration:
    @pytest.mark.parametrize("seed", range(10))
    def test_full_curve_is_weakly_increasing(self, seed):
        queue = CallerQueue(rng=random.Random(seed))
        callers = queue.generate_queue(5, difficulty_curve=100)
        difficulties = [c.difficulty for c in callers]
        assert all(1 <= d <= 5 for d in difficulties)
        assert difficulties == sorted(difficulties)

    def test_flat_curve_keeps_everyone_easy(self):
        queue = CallerQueue(rng=random.Random(3))
        callers = queue.generate_queue(8, difficulty_curve=0)
        assert {c.difficulty for c in callers} == {1}

    @pytest.mark.parametrize("index", [1, 2, 3, 4])
    def test_mean_difficulty_rises_with_curve(self, index):
        queue = CallerQueue(rng=random.Random(2024))
        means = [
            statistics.mean(queue.difficulty_for(index, 5, curve) for _ in range(2000))
            for curve in (0, 25, 50, 75, 100)
        ]
        # curves that share a base difficulty differ only by sampling noise
        for lower, higher in zip(means, means[1:]):
            assert higher >= lower - 0.05
        assert means[-1] > means[0]

    def test_positions_and_objectives(self, queue):
        callers = queue.generate_queue(4, 50)
        assert [c.position for c in callers] == [1, 2, 3, 4]
        assert all(c.objective for c in callers)
        assert all(c.estimated_duration_s >= 60 for c in callers)

    def test_voices_dealt_and_names_follow_gender(self, queue):
        voices = [VoiceInfo(voice_id="v1", name="Rachel"), VoiceInfo(voice_id="v2", name="Adam")]
        callers = queue.generate_queue(4, 50, voices)
        assert {c.voice_id for c in callers} == {"v1", "v2"}
        for caller in callers:
            expected = Gender.FEMALE if caller.voice_id == "v1" else Gender.MALE
            assert caller.gender == expected

    def test_no_voices(self, queue):
        callers = queue.generate_queue(2, 50, [])
        assert all(c.voice_id is None for c in callers)

    def test_invalid_arguments(self, queue):
        with pytest.raises(ValueError):
            queue.generate_queue(0)
        with pytest.raises(ValueError):
            queue.generate_queue(3, difficulty_curve=101)

    def test_callers_are_frozen(self, queue):
        caller = queue.generate_queue(1)[0]
        with pytest.raises(ValidationError):
            caller.difficulty = 5


class TestInferGender:
    @pytest.mark.parametrize("name, expected", [
        ("Rachel", Gender.FEMALE),
        ("Calm Female Narrator", Gender.FEMALE),
        ("Young Woman", Gender.FEMALE),
        ("Adam", Gender.MALE),
        ("Deep Male Voice", Gender.MALE),
        ("Robot 7", None),
    ])
    def test_markers(self, name, expected):
        assert infer_gender(name) == expected


# ── Stamina ──────────────────────────────────────────────────


class TestStamina:
    def test_delta_curve(self):
        assert stamina_delta(0) == pytest.approx(-1.0)
        assert stamina_delta(30) == pytest.approx(-0.5)
        assert stamina_delta(70) == 0.0
        assert stamina_delta(90) == pytest.approx(1.0)
        assert stamina_delta(100) == pytest.approx(2.0)

    def test_call_time_decay(self, queue):
        queue.generate_queue(3)
        # pace in band, confidence/clarity 50 → score 66.7, no performance delta
        assert queue.update_stamina(metrics(), elapsed_s=120) == pytest.approx(99.0)

    def test_clamped_at_maximum(self, queue):
        queue.generate_queue(3)
        assert queue.update_stamina(metrics(confidence=100, clarity=100)) == 100.0

    def test_clamped_at_zero(self, clock):
        queue = CallerQueue(decay_per_minute=50.0, clock=clock)
        queue.generate_queue(2)
        assert queue.update_stamina(metrics(pace=0, confidence=0, clarity=0), elapsed_s=600) == 0.0

    def test_history_is_immutable_snapshot(self, queue):
        queue.generate_queue(3)
        queue.update_stamina(metrics(confidence=90, clarity=90))
        history = queue.get_stamina_history()
        assert isinstance(history, tuple)
        assert len(history) == 1
        with pytest.raises(ValidationError):
            history[0].stamina = 1.0
        queue.update_stamina(metrics())
        assert len(history) == 1
        assert len(queue.get_stamina_history()) == 2

    def test_history_copies_metrics(self, queue):
        queue.generate_queue(2)
        m = metrics(confidence=40)
        queue.update_stamina(m)
        m.confidence = 99
        assert queue.get_stamina_history()[0].metrics.confidence == 40


# ── Transition ───────────────────────────────────────────────


class TestTransition:
    @pytest.mark.asyncio
    async def test_countdown_then_listeners(self, queue, fake_sleep):
        queue.generate_queue(3)
        order = []
        queue.add_transition_listener(lambda event: order.append(("listener", event.current_index)))

        caller = await queue.transition_to_next(
            on_countdown=lambda n: order.append(("tick", n)),
            before_start=lambda c: order.append(("start", c.position)),
        )

        assert caller.position == 2
        assert order == [("tick", 3), ("tick", 2), ("tick", 1), ("tick", 0),
                         ("start", 2), ("listener", 1)]
        assert fake_sleep.calls == [1, 1, 1]
        assert queue.current_index == 1

    @pytest.mark.asyncio
    async def test_async_callbacks_awaited(self, queue):
        queue.generate_queue(2)
        ticks = []

        async def on_tick(n):
            ticks.append(n)

        await queue.transition_to_next(on_tick)
        assert ticks == [3, 2, 1, 0]

    @pytest.mark.asyncio
    async def test_transition_updates_stamina_with_call_time(self, queue, clock):
        queue.generate_queue(2)
        queue.start_call_timer()
        clock.advance(60_000)
        await queue.transition_to_next(metrics=metrics())
        assert queue.stamina == pytest.approx(99.5)
        status = queue.get_status()
        assert status.completed_calls == 1
        assert status.total_call_time_s == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_end_of_queue_returns_none(self, queue, fake_sleep):
        queue.generate_queue(1)
        assert queue.is_last
        assert await queue.transition_to_next() is None
        assert fake_sleep.calls == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_abort(self, queue):
        queue.generate_queue(2)
        seen = []

        def broken(_):
            raise RuntimeError("listener gone")

        queue.add_transition_listener(broken)
        queue.add_transition_listener(seen.append)
        await queue.transition_to_next()
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_removed_listener_not_called(self, queue):
        queue.generate_queue(2)
        seen = []
        queue.add_transition_listener(seen.append)
        queue.remove_transition_listener(seen.append)
        await queue.transition_to_next()
        assert seen == []


class TestStatus:
    def test_status_progress(self, queue):
        queue.generate_queue(4)
        status = queue.get_status()
        assert status.queue_length == 4
        assert status.current_position == 1
        assert status.remaining == 3
        assert status.progress == pytest.approx(25.0)
        assert queue.get_next_caller().position == 2

    def test_reset(self, queue):
        queue.generate_queue(3)
        queue.update_stamina(metrics(pace=0, confidence=0, clarity=0))
        queue.reset()
        assert queue.get_current_caller() is None
        assert queue.stamina == 100.0
        assert queue.get_stamina_history() == ()
        assert not queue.get_status().is_active
