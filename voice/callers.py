"""
Caller Queue & Stamina — stress-mode sequence of synthetic callers.

- Queue generation: difficulty ramps along the queue according to the
  difficulty curve; mood is drawn from a difficulty-indexed weight table
  that leans confrontational as difficulty rises; voices are dealt
  round-robin from a shuffled pool and the caller's name follows the
  voice's apparent gender
- Stamina: endurance in [0, 100] that drops on weak exchanges, recovers
  a little on strong ones and decays slowly with call time; every update
  is appended to an immutable history
- Transitions: timed hand-over to the next caller with a per-second
  countdown, then listeners are told about the new caller
"""
from __future__ import annotations

import asyncio
import inspect
import math
import random
import structlog
from typing import Any, Awaitable, Callable, Optional

from core.scoring import performance_score
from models.schemas import (
    Caller, CallerMood, CallerScenario, CallerTransition, Gender,
    QueueStatus, SessionMetrics, StaminaRecord, VoiceInfo,
)
from utils.clock import Clock, now_ms

logger = structlog.get_logger()


MAX_STAMINA = 100.0
MIN_DIFFICULTY = 1
MAX_DIFFICULTY = 5

MOODS = (
    CallerMood.NEUTRAL, CallerMood.HOSTILE, CallerMood.FRUSTRATED,
    CallerMood.ANXIOUS, CallerMood.DEMANDING,
)

# Weights over MOODS, indexed by difficulty 1–5
MOOD_WEIGHTS = {
    1: (0.50, 0.10, 0.10, 0.20, 0.10),
    2: (0.30, 0.15, 0.20, 0.20, 0.15),
    3: (0.20, 0.20, 0.25, 0.20, 0.15),
    4: (0.10, 0.25, 0.25, 0.20, 0.20),
    5: (0.05, 0.30, 0.25, 0.15, 0.25),
}

OBJECTIVES = {
    CallerScenario.COMPLAINT: "Resolve customer complaint while maintaining satisfaction",
    CallerScenario.NEGOTIATION: "Reach mutually beneficial agreement within budget",
    CallerScenario.OBJECTION: "Address concerns and move forward with proposal",
    CallerScenario.CRISIS: "De-escalate situation and find immediate solution",
    CallerScenario.INQUIRY: "Provide comprehensive information and guidance",
}

NAMES = {
    Gender.MALE: ("Ahmad", "Budi", "Dimas", "Eko", "Fajar", "Gilang",
                  "Hendra", "Irfan", "John", "Kevin", "Michael", "David"),
    Gender.FEMALE: ("Ani", "Bunga", "Citra", "Dewi", "Eka", "Fitri",
                    "Gita", "Hana", "Sarah", "Lisa", "Maria", "Nina"),
}

# Checked in this order: "female" contains "male", "woman" contains "man"
FEMALE_MARKERS = ("female", "woman", "girl", "sarah", "rachel", "emily", "bella", "elli", "domi")
MALE_MARKERS = ("male", "man", "boy", "adam", "josh", "sam", "arnold", "antoni", "brian")

# Stamina model
LOW_PERFORMANCE = 60.0
HIGH_PERFORMANCE = 80.0


def infer_gender(voice_name: str) -> Optional[Gender]:
    """Best-effort gender from a voice's display name; None when nothing matches."""
    name = voice_name.lower()
    if any(marker in name for marker in FEMALE_MARKERS):
        return Gender.FEMALE
    if any(marker in name for marker in MALE_MARKERS):
        return Gender.MALE
    return None


def stamina_delta(score: float) -> float:
    """Stamina change for one exchange with the given performance score."""
    if score < LOW_PERFORMANCE:
        return -(0.1 * ((LOW_PERFORMANCE - score) / 60.0) * 10.0)
    if score > HIGH_PERFORMANCE:
        return ((score - HIGH_PERFORMANCE) / 20.0) * 2.0
    return 0.0


TransitionListener = Callable[[CallerTransition], Any]
CountdownCallback = Callable[[int], Any]


class CallerQueue:
    """
    Usage:
        queue = CallerQueue(inter_call_delay_s=5)
        queue.generate_queue(5, difficulty_curve=70, available_voices=voices)
        queue.start_call_timer()
        ...
        next_caller = await queue.transition_to_next(on_countdown, metrics=metrics)
    """

    def __init__(
        self,
        inter_call_delay_s: int = 5,
        decay_per_minute: float = 0.5,
        clock: Clock = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.inter_call_delay_s = inter_call_delay_s
        self.decay_per_minute = decay_per_minute
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._callers: tuple[Caller, ...] = ()
        self._index = 0
        self._difficulty_curve = 50
        self._stamina = MAX_STAMINA
        self._history: list[StaminaRecord] = []
        self._listeners: list[TransitionListener] = []
        self._call_started_ms: Optional[float] = None
        self._total_call_time_s = 0.0
        self._completed_calls = 0

    # ══════════════════════════════════════════════════════════
    #  GENERATION
    # ══════════════════════════════════════════════════════════

    def generate_queue(
        self,
        length: int,
        difficulty_curve: int = 50,
        available_voices: Optional[list[VoiceInfo]] = None,
    ) -> tuple[Caller, ...]:
        """Build the whole queue once; later calls replace it and reset progress."""
        if length < 1:
            raise ValueError("queue length must be at least 1")
        if not 0 <= difficulty_curve <= 100:
            raise ValueError("difficulty_curve must be within 0–100")

        voices = list(available_voices or [])
        self._rng.shuffle(voices)
        callers = []
        for i in range(length):
            difficulty = self.difficulty_for(i, length, difficulty_curve)
            voice = voices[i % len(voices)] if voices else None
            gender = infer_gender(voice.name) if voice else None
            if gender is None:
                gender = self._rng.choice([Gender.MALE, Gender.FEMALE])
            scenario = self._rng.choice(list(CallerScenario))
            callers.append(Caller(
                position=i + 1,
                name=self._rng.choice(NAMES[gender]),
                gender=gender,
                mood=self._pick_mood(difficulty),
                scenario=scenario,
                difficulty=difficulty,
                objective=OBJECTIVES[scenario],
                estimated_duration_s=self._estimate_duration(difficulty),
                voice_id=voice.voice_id if voice else None,
            ))

        self._callers = tuple(callers)
        self._difficulty_curve = difficulty_curve
        self._index = 0
        self._stamina = MAX_STAMINA
        self._history = []
        self._completed_calls = 0
        self._total_call_time_s = 0.0
        self._call_started_ms = None
        logger.info("caller_queue_generated",
                    length=length,
                    difficulty_curve=difficulty_curve,
                    difficulties=[c.difficulty for c in callers],
                    voices=len(voices))
        return self._callers

    def difficulty_for(self, index: int, length: int, difficulty_curve: int) -> int:
        """1 + floor(ratio × 4 × curve/100) + jitter in {-1, 0}, clamped to 1–5."""
        ratio = index / max(1, length - 1)
        base = 1 + math.floor(ratio * 4 * (difficulty_curve / 100.0))
        jitter = self._rng.randint(-1, 0)
        return max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, base + jitter))

    def _pick_mood(self, difficulty: int) -> CallerMood:
        return self._rng.choices(MOODS, weights=MOOD_WEIGHTS[difficulty], k=1)[0]

    def _estimate_duration(self, difficulty: int) -> int:
        return max(60, 60 + difficulty * 45 + self._rng.randint(-30, 29))

    # ══════════════════════════════════════════════════════════
    #  NAVIGATION
    # ══════════════════════════════════════════════════════════

    @property
    def callers(self) -> tuple[Caller, ...]:
        return self._callers

    @property
    def current_index(self) -> int:
        return self._index

    def get_current_caller(self) -> Optional[Caller]:
        if not self._callers:
            return None
        return self._callers[self._index]

    def get_next_caller(self) -> Optional[Caller]:
        if self._index + 1 >= len(self._callers):
            return None
        return self._callers[self._index + 1]

    @property
    def is_last(self) -> bool:
        return not self._callers or self._index >= len(self._callers) - 1

    def add_transition_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def remove_transition_listener(self, listener: TransitionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ── Call timer ────────────────────────────────────────

    def start_call_timer(self) -> None:
        self._call_started_ms = self._clock()

    def end_call_timer(self) -> float:
        """Stop the running call timer and return its elapsed seconds (0 if idle)."""
        if self._call_started_ms is None:
            return 0.0
        elapsed_s = max(0.0, (self._clock() - self._call_started_ms) / 1000.0)
        self._call_started_ms = None
        self._total_call_time_s += elapsed_s
        self._completed_calls += 1
        return elapsed_s

    # ── Transition ────────────────────────────────────────

    async def transition_to_next(
        self,
        on_countdown: Optional[CountdownCallback] = None,
        metrics: Optional[SessionMetrics] = None,
        before_start: Optional[Callable[[Caller], Any]] = None,
    ) -> Optional[Caller]:
        """
        Hand over to the next caller. Returns None at the end of the queue.

        Order: stop timer → stamina update → advance → countdown (N..0)
        → ``before_start(caller)`` (context reset) → start timer → listeners.
        """
        if self.is_last:
            return None

        elapsed_s = self.end_call_timer()
        if metrics is not None:
            self.update_stamina(metrics, elapsed_s=elapsed_s)

        previous = self._index
        self._index += 1
        caller = self._callers[self._index]
        logger.info("caller_transition_started",
                    previous_index=previous,
                    current_index=self._index,
                    delay_s=self.inter_call_delay_s)

        for remaining in range(self.inter_call_delay_s, 0, -1):
            await self._call(on_countdown, remaining)
            await self._sleep(1)
        await self._call(on_countdown, 0)

        await self._call(before_start, caller)
        self.start_call_timer()

        event = CallerTransition(
            previous_index=previous,
            current_index=self._index,
            next_caller=caller,
            status=self.get_status(),
        )
        for listener in list(self._listeners):
            try:
                await self._call(listener, event)
            except Exception as e:
                logger.error("transition_listener_failed", error=str(e))

        logger.info("caller_transition_complete",
                    caller=caller.name, mood=caller.mood.value,
                    difficulty=caller.difficulty, stamina=round(self._stamina, 2))
        return caller

    @staticmethod
    async def _call(fn: Optional[Callable[..., Any]], *args: Any) -> None:
        if fn is None:
            return
        result = fn(*args)
        if inspect.isawaitable(result):
            await result

    # ══════════════════════════════════════════════════════════
    #  STAMINA
    # ══════════════════════════════════════════════════════════

    @property
    def stamina(self) -> float:
        return self._stamina

    def update_stamina(self, metrics: SessionMetrics, elapsed_s: float = 0.0) -> float:
        """Apply one exchange's performance (plus call-time decay) and record it."""
        score = performance_score(metrics)
        change = stamina_delta(score) - self.decay_per_minute * max(0.0, elapsed_s) / 60.0
        self._stamina = max(0.0, min(MAX_STAMINA, self._stamina + change))
        self._history.append(StaminaRecord(
            timestamp_ms=self._clock(),
            stamina=self._stamina,
            performance_score=score,
            metrics=metrics.model_copy(),
        ))
        logger.debug("stamina_updated", score=round(score, 2), change=round(change, 3),
                     stamina=round(self._stamina, 2))
        return self._stamina

    def get_stamina_history(self) -> tuple[StaminaRecord, ...]:
        return tuple(self._history)

    # ══════════════════════════════════════════════════════════
    #  STATUS
    # ══════════════════════════════════════════════════════════

    def get_status(self) -> QueueStatus:
        length = len(self._callers)
        position = self._index + 1 if length else 0
        return QueueStatus(
            queue_length=length,
            current_position=position,
            remaining=max(0, length - position),
            is_active=bool(length),
            progress=(position / length * 100.0) if length else 0.0,
            stamina=self._stamina,
            inter_call_delay_s=self.inter_call_delay_s,
            difficulty_curve=self._difficulty_curve,
            completed_calls=self._completed_calls,
            total_call_time_s=round(self._total_call_time_s, 3),
        )

    def reset(self) -> None:
        self._callers = ()
        self._index = 0
        self._stamina = MAX_STAMINA
        self._history = []
        self._listeners.clear()
        self._call_started_ms = None
        self._total_call_time_s = 0.0
        self._completed_calls = 0
