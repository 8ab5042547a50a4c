"""Shared test fixtures for the session orchestrator and its components."""
import random

import pytest
import pytest_asyncio

from config.settings import Settings
from core.quota import InMemoryQuotaLedger
from core.scheduler import TaskScheduler
from core.services import (
    CannedTextGeneration, MockAudioService, SilentSpeechSynthesis, TextGenerationService,
)
from core.orchestrator import SessionOrchestrator
from database.store import InMemoryReportStore
from models.schemas import Emotion, Language, SessionConfig
from utils.clock import ManualClock


class FakeSleep:
    """Records requested delays and returns immediately."""

    def __init__(self, clock: ManualClock = None):
        self.calls: list[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds * 1000.0)


class SpyTextGeneration(TextGenerationService):
    """Counts calls; replies with a fixed line and a fixed emotion."""

    def __init__(self, reply: str = "I understand, tell me more.",
                 emotion: Emotion = Emotion.FRUSTRATED, error: Exception = None):
        self.reply = reply
        self.emotion = emotion
        self.error = error
        self.generate_calls = 0
        self.emotion_calls = 0
        self.contexts = []

    async def generate_response(self, context, utterance):
        self.generate_calls += 1
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        return self.reply

    async def analyze_emotion(self, text):
        self.emotion_calls += 1
        return self.emotion


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start_ms=1_000_000.0)


@pytest.fixture
def fake_sleep(clock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def scheduler(clock) -> TaskScheduler:
    return TaskScheduler(clock=clock)


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def audio(fake_sleep) -> MockAudioService:
    return MockAudioService(sleep=fake_sleep)


@pytest.fixture
def speech() -> SilentSpeechSynthesis:
    return SilentSpeechSynthesis()


@pytest.fixture
def text_gen() -> SpyTextGeneration:
    return SpyTextGeneration()


@pytest.fixture
def store() -> InMemoryReportStore:
    return InMemoryReportStore()


@pytest.fixture
def ledger() -> InMemoryQuotaLedger:
    return InMemoryQuotaLedger(daily_limit=50.0)


@pytest_asyncio.fixture
async def make_orchestrator(settings, audio, speech, text_gen, store, ledger, clock, fake_sleep, rng):
    created = []

    def factory(**overrides) -> SessionOrchestrator:
        kwargs = dict(
            audio=audio, text_gen=text_gen, speech=speech, store=store, ledger=ledger,
            settings=settings, clock=clock, sleep=fake_sleep, rng=rng,
        )
        kwargs.update(overrides)
        orchestrator = SessionOrchestrator(**kwargs)
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        await orchestrator.cleanup()


@pytest.fixture
def orchestrator(make_orchestrator) -> SessionOrchestrator:
    return make_orchestrator()


@pytest.fixture
def mock_config() -> SessionConfig:
    return SessionConfig(scenario="customer-complaint", language=Language.ENGLISH, mock_mode=True)


@pytest.fixture
def live_config() -> SessionConfig:
    return SessionConfig(scenario="job-interview", language=Language.ENGLISH)


@pytest.fixture
def canned() -> CannedTextGeneration:
    return CannedTextGeneration()
