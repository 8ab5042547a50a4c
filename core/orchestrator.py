"""
Session Orchestrator — the central coordinator for one training session.

Architecture:
  Capture:  audio sink → (mic muted? drop) → VAD → voice start / end
            → barge-in while the partner is speaking

  Turn:     transcript → speech metrics → conversation history
            → quota check → text generation → emotion → telemetry
            → TTS starting → synthesis stream → playback wait
            → tail buffer → TTS complete (listening resumes)

  Stress:   caller queue → countdown → fresh context for the next caller
            → stamina updated after every exchange

Every collaborator is constructor-injected. All timers live on one
TaskScheduler owned here; teardown drains it. Every paid call goes through
the QuotaGuard (ledger check, retry policy, fallback, cost recording).
"""
from __future__ import annotations

import asyncio
import inspect
import random
import structlog
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from config.settings import Settings, get_settings
from core.errors import (
    DeviceUnavailable, ErrorCode, InvalidInput, InvalidState, PermissionDenied,
    QuotaExceeded, ServiceError, TrainerError, TransientServiceFailure,
)
from core.prompts import (
    fallback_greeting, fallback_response, greeting_prompt, role_for_caller,
    role_for_scenario,
)
from core.quota import InMemoryQuotaLedger, QuotaLedger, estimate_cost
from core.retry import QuotaGuard, RetryPolicy
from core.scheduler import TaskScheduler
from core.scoring import emotional_intensity, letter_grade, overall_score
from core.services import (
    AudioService, CannedTextGeneration, SpeechSynthesisService, TextGenerationService,
)
from core.state import SessionStateMachine
from database.store import InMemoryReportStore, ReportStore
from models.schemas import (
    Caller, CallerTransition, ConversationContext, ConversationTurn, DisruptionType,
    Emotion, Session, SessionConfig, SessionMetrics, SessionMode, SessionReport,
    SessionState, Speaker, TelemetrySample,
)
from utils.clock import Clock, now_ms
from voice.analysis import analyze_utterance, count_words, words_per_minute
from voice.callers import CallerQueue
from voice.disruption import DisruptionEngine
from voice.vad import VoiceActivityDetector

logger = structlog.get_logger()


HOST_CALLBACKS = (
    "on_transcript",
    "on_ai_response",
    "on_tts_starting",
    "on_tts_complete",
    "on_state_change",
    "on_caller_transition",
    "on_voice_start",
    "on_voice_end",
    "on_barge_in",
    "on_disruption",
)

MANUAL_DISRUPTIONS = (
    DisruptionType.VOICE_VARIATION,
    DisruptionType.BACKGROUND_NOISE,
    DisruptionType.HARDWARE_FAILURE,
)


class SessionOrchestrator:
    """
    Usage:
        orchestrator = SessionOrchestrator(audio, text_gen, speech)
        await orchestrator.start_session(SessionConfig(scenario="job-interview"))
        await orchestrator.send_initial_greeting()
        reply = await orchestrator.process_user_input("Good morning, thanks for having me")
        report = await orchestrator.end_session()
    """

    def __init__(
        self,
        audio: AudioService,
        text_gen: TextGenerationService,
        speech: SpeechSynthesisService,
        store: Optional[ReportStore] = None,
        ledger: Optional[QuotaLedger] = None,
        retry_policy: Optional[RetryPolicy] = None,
        settings: Optional[Settings] = None,
        scheduler: Optional[TaskScheduler] = None,
        vad: Optional[VoiceActivityDetector] = None,
        disruption: Optional[DisruptionEngine] = None,
        callers: Optional[CallerQueue] = None,
        clock: Clock = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or get_settings()
        self.audio = audio
        self.text_gen = text_gen
        self.speech = speech
        self.store = store or InMemoryReportStore()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        quota = self.settings.quota
        self.ledger = ledger or InMemoryQuotaLedger(
            daily_limit=quota.daily_limit,
            warning_threshold=quota.warning_threshold,
            critical_threshold=quota.critical_threshold,
        )
        retry = self.settings.retry
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=retry.max_attempts,
            initial_backoff_s=retry.initial_backoff_s,
            max_backoff_s=retry.max_backoff_s,
            sleep=self._backoff,
        )
        self.guard = QuotaGuard(self.ledger, self.retry_policy)

        self.scheduler = scheduler or TaskScheduler(clock=clock)
        self.vad = vad or VoiceActivityDetector(buffer_size=self.settings.vad.buffer_size, clock=clock)
        self.disruption = disruption or DisruptionEngine(
            self.scheduler, audio=audio, clock=clock, rng=self._rng,
        )
        self.callers = callers or CallerQueue(
            decay_per_minute=self.settings.timing.stamina_decay_per_minute,
            clock=clock, sleep=sleep, rng=self._rng,
        )

        self._machine = SessionStateMachine(on_change=self._on_state_change)
        self._canned = CannedTextGeneration()
        self._callbacks: dict[str, Optional[Callable[..., Any]]] = dict.fromkeys(HOST_CALLBACKS)
        self._flow_lock = asyncio.Lock()
        self._barge_in = asyncio.Event()
        self._playback_task: Optional[asyncio.Task] = None

        self._session: Optional[Session] = None
        self._context: Optional[ConversationContext] = None
        self._voice_id: Optional[str] = None
        self._started_ms = 0.0
        self._last_exchange_ms = 0.0
        self._user_turns = 0
        self._tts_active = False
        self._audio_available = True
        self._closing = False
        self._teardown = asyncio.Event()

    # ══════════════════════════════════════════════════════════
    #  CALLBACKS & STATE
    # ══════════════════════════════════════════════════════════

    def set_callbacks(self, **callbacks: Optional[Callable[..., Any]]) -> None:
        for name, fn in callbacks.items():
            if name not in self._callbacks:
                raise InvalidInput(f"Unknown orchestrator callback: {name}")
            self._callbacks[name] = fn

    def _emit(self, name: str, *args: Any) -> None:
        fn = self._callbacks.get(name)
        if fn is None:
            return
        try:
            result = fn(*args)
        except Exception as e:
            logger.error("host_callback_failed", callback=name, error=str(e))
            return
        if inspect.isawaitable(result):
            self.scheduler.spawn(result, name=name)

    def _on_state_change(self, previous: SessionState, current: SessionState) -> None:
        self._emit("on_state_change", previous, current)

    @property
    def state(self) -> SessionState:
        return self._machine.state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def is_speaking(self) -> bool:
        """True while the partner's reply is being synthesized or played."""
        return self._tts_active

    # ══════════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════════

    async def start_session(self, config: SessionConfig) -> Session:
        if self.state != SessionState.IDLE:
            logger.warning("start_session_forced_cleanup", state=self.state.value)
            await self.cleanup()

        self._machine.transition(SessionState.INITIALIZING, reason="start_session")
        session = Session(config=config)
        self._session = session
        log = logger.bind(session_id=session.id)

        try:
            ai_role = role_for_scenario(config.scenario)
            self._voice_id = config.voice_id
            if config.mode == SessionMode.STRESS:
                self.callers.inter_call_delay_s = config.inter_call_delay_s
                self.callers.generate_queue(
                    config.queue_length, config.difficulty_curve, config.available_voices,
                )
                self.callers.add_transition_listener(self._on_caller_transition)
                caller = self.callers.get_current_caller()
                ai_role = role_for_caller(caller)
                self._voice_id = caller.voice_id or config.voice_id

            if config.disruption.enabled:
                self._init_disruptions(config)

            self._context = ConversationContext(
                scenario=config.scenario,
                language=config.language,
                ai_role=ai_role,
                documents=list(config.context_documents),
            )

            self.audio.set_sink(self._on_audio)
            await self._start_capture()

            self.vad.initialize(
                config.sensitivity,
                noise_floor=self.settings.vad.noise_floor,
                min_duration_ms=self.settings.vad.min_speech_ms,
            )
            self.vad.set_callbacks(on_voice_start=self._on_voice_start,
                                   on_voice_end=self._on_voice_end)
        except PermissionDenied:
            log.error("session_start_permission_denied")
            await self.cleanup()
            raise
        except Exception:
            log.exception("session_start_failed")
            await self.cleanup()
            raise

        self._started_ms = self._clock()
        self._last_exchange_ms = self._started_ms
        self._user_turns = 0
        session.metrics = SessionMetrics()
        self._machine.transition(SessionState.ACTIVE, reason="session_started")
        await self.scheduler.start()
        if config.mode == SessionMode.STRESS:
            self.callers.start_call_timer()
        if self.disruption.enabled:
            self.disruption.start_automatic_disruptions()

        log.info("session_started",
                 scenario=config.scenario,
                 language=config.language.value,
                 mode=config.mode.value,
                 mock_mode=config.mock_mode,
                 disruptions=config.disruption.enabled,
                 audio=self._audio_available)
        return session

    def _init_disruptions(self, config: SessionConfig) -> None:
        self.disruption.initialize(config.disruption)
        try:
            self.disruption.set_callbacks(
                on_hardware_failure=self._on_hardware_failure,
                on_disruption_start=lambda event: self._emit("on_disruption", event),
            )
        except InvalidInput as e:
            logger.warning("disruption_callbacks_not_wired", error=str(e))
        if config.disruption.background_noise:
            self.disruption.start_continuous_noise()

    async def _start_capture(self) -> None:
        try:
            await self.audio.start_recording()
            self._audio_available = True
        except DeviceUnavailable as e:
            # session continues without capture; transcripts still arrive from the host
            self._audio_available = False
            logger.warning("audio_capture_unavailable", error=str(e))

    async def pause_session(self) -> None:
        self._machine.require(SessionState.ACTIVE, action="pause_session")
        self.disruption.stop_automatic_disruptions()
        await self._stop_capture()
        self.vad.reset()
        self._machine.transition(SessionState.PAUSED, reason="pause_session")

    async def resume_session(self) -> None:
        self._machine.require(SessionState.PAUSED, action="resume_session")
        await self._start_capture()
        if self.disruption.enabled:
            self.disruption.start_automatic_disruptions()
        self._machine.transition(SessionState.ACTIVE, reason="resume_session")

    async def _stop_capture(self) -> None:
        try:
            await self.audio.stop_recording()
        except TrainerError as e:
            logger.warning("audio_stop_failed", error=str(e))

    async def end_session(self) -> SessionReport:
        self._machine.require(SessionState.ACTIVE, SessionState.PAUSED, action="end_session")
        session = self._session
        log = logger.bind(session_id=session.id)

        # release an in-flight turn before taking the flow lock
        await self._halt_output()
        async with self._flow_lock:
            self.disruption.stop_automatic_disruptions()
            await self.disruption.halt_continuous_noise()
            self._machine.transition(SessionState.COMPLETED, reason="end_session")

            report = self._build_report(session)
            try:
                await self.store.save_session(report)
            except Exception as e:
                log.error("session_persist_failed", error=str(e))

        await self.cleanup()
        log.info("session_ended", score=report.score, grade=report.grade,
                 duration_s=report.duration_s, turns=len(report.conversation_history))
        return report

    def _build_report(self, session: Session) -> SessionReport:
        ended_ms = self._clock()
        session.ended_at = session.ended_at or datetime.now(timezone.utc)
        metrics = session.metrics.model_copy()
        metrics.duration_s = int(max(0.0, ended_ms - self._started_ms) / 1000.0)
        score = overall_score(metrics)
        stress = session.config.mode == SessionMode.STRESS
        if stress:
            self.callers.end_call_timer()
        return SessionReport(
            session_id=session.id,
            scenario=session.config.scenario,
            mode=session.config.mode,
            language=session.config.language,
            started_at=session.started_at,
            ended_at=session.ended_at,
            duration_s=metrics.duration_s,
            score=score,
            grade=letter_grade(score),
            metrics=metrics,
            conversation_history=list(session.history),
            emotional_telemetry=list(session.telemetry),
            disruption_statistics=self.disruption.get_statistics(),
            disruption_log=self.disruption.get_log(),
            queue_status=self.callers.get_status() if stress else None,
            stamina_history=list(self.callers.get_stamina_history()) if stress else [],
        )

    async def cleanup(self) -> None:
        """Stop every timer, capture and noise bed, then return to idle."""
        await self._halt_output()
        await self.disruption.halt_continuous_noise()
        await self.scheduler.stop()
        self.disruption.cleanup()
        self.callers.remove_transition_listener(self._on_caller_transition)
        self.callers.reset()
        self.vad.reset()
        await self._stop_capture()
        self.audio.set_sink(None)

        self._session = None
        self._context = None
        self._voice_id = None
        self._tts_active = False
        self._user_turns = 0
        self._barge_in = asyncio.Event()
        self._closing = False
        self._teardown = asyncio.Event()
        if self.state == SessionState.COMPLETED:
            self._machine.transition(SessionState.IDLE, reason="cleanup")
        else:
            self._machine.force_idle(reason="cleanup")

    # ══════════════════════════════════════════════════════════
    #  CAPTURE — audio sink, VAD and barge-in
    # ══════════════════════════════════════════════════════════

    def _on_audio(self, energy: float, chunk: bytes) -> None:
        if self.state != SessionState.ACTIVE:
            return
        if self.disruption.is_mic_muted():
            return
        self.vad.process_sample(energy)

    def feed_audio(self, energy: float, chunk: bytes = b"") -> bool:
        """Push one captured chunk from the host (WebSocket). Returns the speaking flag."""
        self._on_audio(energy, chunk)
        return self.vad.is_speaking

    def _on_voice_start(self, energy: float) -> None:
        self._emit("on_voice_start", energy)
        if self._tts_active or self.speech.is_streaming:
            self.barge_in()

    def _on_voice_end(self, duration_ms: float) -> None:
        self._emit("on_voice_end", duration_ms)

    def barge_in(self) -> None:
        """User interrupted the partner: stop synthesis and playback, resume listening."""
        if self._barge_in.is_set():
            return
        self._barge_in.set()
        logger.info("barge_in", tts_active=self._tts_active,
                    streaming=self.speech.is_streaming)
        self.scheduler.spawn(self._interrupt_output(), name="barge_in")
        self._emit("on_barge_in")

    async def _interrupt_output(self) -> None:
        await self.speech.stop()
        await self.audio.trigger_barge_in()

    async def _halt_output(self) -> None:
        """Release a turn that holds the flow lock: stop its output, end any backoff."""
        self._closing = True
        self._teardown.set()
        self._barge_in.set()
        await self.speech.stop()
        if self._tts_active:
            await self.audio.trigger_barge_in()
        await self._stop_playback()

    def _on_hardware_failure(self, kind: str, duration_ms: float) -> None:
        logger.warning("hardware_failure_active", failure=kind, duration_ms=duration_ms)

    # ══════════════════════════════════════════════════════════
    #  TURN CYCLE
    # ══════════════════════════════════════════════════════════

    async def send_initial_greeting(self) -> str:
        self._machine.require(SessionState.ACTIVE, action="send_initial_greeting")
        async with self._flow_lock:
            language = self._context.language
            if self._session.config.mock_mode:
                text = await self._canned.generate_response(self._context, greeting_prompt(language))
            else:
                text = await self._generate(greeting_prompt(language),
                                            fallback=fallback_greeting(language),
                                            operation="greeting")
            self._record_ai_turn(text, Emotion.NEUTRAL)
            await self._speak(text)
            return text

    async def process_user_input(self, text: str) -> Optional[str]:
        """
        Run one exchange for a recognized utterance. Returns the partner's
        reply, or None when the utterance was ignored (paused, blank).
        """
        if self.state == SessionState.PAUSED:
            logger.debug("utterance_ignored_paused")
            return None
        self._machine.require(SessionState.ACTIVE, action="process_user_input")
        text = (text or "").strip()
        if not text:
            return None

        async with self._flow_lock:
            if self.state != SessionState.ACTIVE:
                return None
            session = self._session
            history_before = list(self._context.history)
            user_turn = self._record_user_turn(text)

            if session.config.mock_mode:
                reply = await self._canned.generate_response(
                    self._context.model_copy(update={"history": history_before}), text)
                emotion = Emotion.NEUTRAL
                degraded = True
            else:
                reply, emotion, degraded = await self._generate_reply(text, history_before)

            self._context.history.extend([user_turn, self._record_ai_turn(reply, emotion)])

            if degraded:
                await self._speak_synthetic(reply)
            else:
                await self._speak(reply)

            if session.config.mode == SessionMode.STRESS:
                now = self._clock()
                self.callers.update_stamina(
                    session.metrics, elapsed_s=max(0.0, now - self._last_exchange_ms) / 1000.0)
                self._last_exchange_ms = now
            return reply

    def _record_user_turn(self, text: str) -> ConversationTurn:
        session = self._session
        analysis = analyze_utterance(text)
        self._user_turns += 1
        session.user_word_count += analysis.words
        elapsed_s = max(0.0, self._clock() - self._started_ms) / 1000.0

        metrics = session.metrics
        n = self._user_turns
        metrics.pace = words_per_minute(session.user_word_count, elapsed_s)
        metrics.confidence = metrics.confidence + (analysis.confidence - metrics.confidence) / n
        metrics.clarity = metrics.clarity + (analysis.clarity - metrics.clarity) / n
        metrics.filler_word_count += analysis.fillers
        metrics.duration_s = int(elapsed_s)

        turn = ConversationTurn(
            speaker=Speaker.USER,
            text=text,
            has_hesitation=analysis.hesitant,
            filler_count=analysis.fillers,
        )
        session.history.append(turn)
        logger.debug("user_turn_recorded", words=analysis.words, fillers=analysis.fillers,
                     hesitant=analysis.hesitant, pace=round(metrics.pace, 1))
        self._emit("on_transcript", turn)
        return turn

    def _record_ai_turn(self, text: str, emotion: Emotion) -> ConversationTurn:
        session = self._session
        turn = ConversationTurn(speaker=Speaker.AI, text=text, emotion=emotion)
        session.history.append(turn)
        session.telemetry.append(TelemetrySample(state=emotion,
                                                 intensity=emotional_intensity(emotion)))
        session.metrics.emotional_state = emotion
        self._emit("on_ai_response", turn)
        return turn

    async def _generate_reply(self, utterance: str,
                              history: list[ConversationTurn]) -> tuple[str, Emotion, bool]:
        """(reply, emotion, degraded). Degraded replies skip every paid call."""
        language = self._context.language
        estimate = self._llm_estimate(utterance, history)
        try:
            self.guard.check("llm", estimate)
        except QuotaExceeded as e:
            logger.warning("turn_quota_exhausted", remaining=round(e.remaining, 6))
            self.guard.fallbacks += 1
            return fallback_response(language), Emotion.NEUTRAL, True

        fallback = fallback_response(language)
        reply = await self._generate(utterance, fallback=fallback, operation="generate",
                                     history=history)
        if reply == fallback:
            # generation failed; the synthesis step is skipped too
            return reply, Emotion.NEUTRAL, True
        emotion = await self.guard.call(
            "llm", "emotion",
            self._external("llm", lambda: self.text_gen.analyze_emotion(reply)),
            estimate=estimate_cost("llm", "emotion", input_length=len(reply), output_length=16),
            fallback=Emotion.NEUTRAL,
            session_id=self._session.id,
        )
        return reply, emotion, False

    async def _generate(self, utterance: str, *, fallback: str, operation: str,
                        history: Optional[list[ConversationTurn]] = None) -> str:
        history = list(self._context.history) if history is None else history
        context = self._context.model_copy(update={"history": history})
        input_length = len(utterance) + sum(len(t.text) for t in history)
        return await self.guard.call(
            "llm", operation,
            self._external("llm", lambda: self.text_gen.generate_response(context, utterance)),
            estimate=self._llm_estimate(utterance, history),
            fallback=fallback,
            actual_cost=lambda reply: estimate_cost(
                "llm", operation, input_length=input_length, output_length=len(reply)),
            session_id=self._session.id,
        )

    def _llm_estimate(self, utterance: str, history: list[ConversationTurn]) -> float:
        input_length = len(utterance) + sum(len(t.text) for t in history)
        # ~4 characters per token
        return estimate_cost("llm", "generate", input_length=input_length,
                             output_length=self.settings.llm.max_tokens * 4)

    def _external(self, service: str, fn: Callable[[], Awaitable[Any]]) -> Callable[[], Awaitable[Any]]:
        """Wrap a paid call so a simulated connection drop fails it transiently."""
        async def call():
            if self._closing:
                raise ServiceError("session is ending", service=service)
            if self.disruption.is_connection_dropped():
                raise TransientServiceFailure("network connection dropped",
                                              code=ErrorCode.NETWORK_ERROR, service=service)
            return await fn()
        return call

    # ══════════════════════════════════════════════════════════
    #  SPEAKING — synthesis, playback and the listening gate
    # ══════════════════════════════════════════════════════════

    def estimate_playback_ms(self, text: str, audio_bytes: int = 0) -> float:
        timing = self.settings.timing
        by_words = count_words(text) * timing.ms_per_word
        by_bytes = audio_bytes * 8 / timing.playback_kbps
        return float(max(timing.min_playback_ms, min(max(by_words, by_bytes), timing.max_playback_ms)))

    async def _speak(self, text: str) -> None:
        if self._session.config.mock_mode:
            await self._speak_synthetic(text)
            return
        self._begin_tts(text)
        try:
            chunks: list[bytes] = []

            async def stream():
                chunks.clear()
                return await self.speech.stream(text, self._voice_id, chunks.append)

            streamed = await self.guard.call(
                "tts", "stream",
                self._external("tts", stream),
                estimate=estimate_cost("tts", "stream", characters=len(text)),
                fallback=None,
                session_id=self._session.id,
            )
            if streamed is None or self._barge_in.is_set() or not chunks:
                return
            audio = self._distort(b"".join(chunks))
            if self._audio_available:
                await self._await_playback(text, audio)
        finally:
            await self._end_tts()

    async def _speak_synthetic(self, text: str) -> None:
        """Canned path: no synthesis, a bounded delay stands in for playback."""
        timing = self.settings.timing
        self._begin_tts(text)
        try:
            delay_ms = min(len(text) * timing.mock_ms_per_char, timing.mock_max_delay_ms)
            await self._wait_or_barge_in(delay_ms)
        finally:
            await self._end_tts()

    def _begin_tts(self, text: str) -> None:
        if not self._closing:
            self._barge_in.clear()
        self._tts_active = True
        self._emit("on_tts_starting", text)

    async def _end_tts(self) -> None:
        if not self._barge_in.is_set():
            await self._sleep(self.settings.timing.tail_buffer_ms / 1000.0)
        self._tts_active = False
        self._emit("on_tts_complete")

    def _distort(self, audio: bytes) -> bytes:
        config = self.disruption.config
        if not self.disruption.enabled:
            return audio
        if config.voice_variation and self._rng.random() < config.intensity:
            audio = self.disruption.apply_voice_variation(audio)
        if (config.background_noise and not self.disruption.continuous_noise_active
                and self._rng.random() < config.intensity):
            audio = self.disruption.inject_background_noise(audio)
        return audio

    async def _await_playback(self, text: str, audio: bytes) -> None:
        timing = self.settings.timing
        self._playback_task = asyncio.ensure_future(self.audio.play_audio(audio))
        try:
            if await self._wait_or_barge_in(self.estimate_playback_ms(text, len(audio))):
                return
            polled = 0
            while self.audio.is_playback_active() and polled < timing.playback_poll_limit_ms:
                if await self._wait_or_barge_in(timing.playback_poll_ms):
                    return
                polled += timing.playback_poll_ms
            if polled >= timing.playback_poll_limit_ms:
                logger.warning("playback_poll_limit_reached", polled_ms=polled)
        finally:
            await self._stop_playback()

    async def _wait_or_barge_in(self, ms: float) -> bool:
        """Sleep ``ms`` unless a barge-in arrives first. Returns True on barge-in."""
        return await self._sleep_unless(ms / 1000.0, self._barge_in)

    async def _backoff(self, seconds: float) -> None:
        """Retry backoff; cut short when the session is torn down."""
        await self._sleep_unless(seconds, self._teardown)

    async def _sleep_unless(self, seconds: float, event: asyncio.Event) -> bool:
        if event.is_set():
            return True
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        interrupted = asyncio.ensure_future(event.wait())
        try:
            await asyncio.wait({sleeper, interrupted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, interrupted):
                if not task.done():
                    task.cancel()
        return event.is_set()

    async def _stop_playback(self) -> None:
        task, self._playback_task = self._playback_task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        results = await asyncio.gather(task, return_exceptions=True)
        error = results[0]
        if isinstance(error, Exception):
            logger.warning("playback_failed", error=str(error))

    # ══════════════════════════════════════════════════════════
    #  DISRUPTIONS & CALLER QUEUE
    # ══════════════════════════════════════════════════════════

    def trigger_manual_disruption(self, kind: DisruptionType | str) -> Optional[DisruptionType]:
        self._machine.require(SessionState.ACTIVE, SessionState.PAUSED,
                              action="trigger_manual_disruption")
        try:
            kind = DisruptionType(kind)
        except ValueError:
            raise InvalidInput(f"Unknown disruption type: {kind!r}") from None
        if kind not in MANUAL_DISRUPTIONS:
            raise InvalidInput(f"{kind.value} cannot be triggered manually")
        fired = self.disruption.trigger(kind)
        logger.info("manual_disruption", type=kind.value, fired=fired is not None)
        return fired

    async def transition_to_next_caller(
        self, on_countdown: Optional[Callable[[int], Any]] = None,
    ) -> Optional[Caller]:
        """Hand over to the next caller; blocks the turn cycle for the countdown."""
        self._machine.require(SessionState.ACTIVE, action="transition_to_next_caller")
        if self._session.config.mode != SessionMode.STRESS:
            raise InvalidState("caller transitions are only available in stress mode")
        async with self._flow_lock:
            return await self.callers.transition_to_next(
                on_countdown, before_start=self._start_caller,
            )

    def _start_caller(self, caller: Caller) -> None:
        # new caller, fresh conversation; language and documents carry over
        self._context.history = []
        self._context.ai_role = role_for_caller(caller)
        self._voice_id = caller.voice_id or self._session.config.voice_id

    def _on_caller_transition(self, event: CallerTransition) -> None:
        self._emit("on_caller_transition", event)

    # ══════════════════════════════════════════════════════════
    #  INSPECTION
    # ══════════════════════════════════════════════════════════

    def get_current_metrics(self) -> SessionMetrics:
        if self._session is None:
            return SessionMetrics()
        metrics = self._session.metrics.model_copy()
        metrics.duration_s = int(max(0.0, self._clock() - self._started_ms) / 1000.0)
        return metrics

    def get_session_snapshot(self) -> dict[str, Any]:
        snapshot: dict[str, Any] = {"state": self.state.value}
        session = self._session
        if session is None:
            return snapshot
        snapshot.update({
            "session_id": session.id,
            "scenario": session.config.scenario,
            "language": session.config.language.value,
            "mode": session.config.mode.value,
            "mock_mode": session.config.mock_mode,
            "metrics": self.get_current_metrics().model_dump(mode="json"),
            "turns": len(session.history),
            "speaking": self._tts_active,
            "vad": self.vad.get_statistics(),
            "disruptions": self.disruption.get_statistics(),
            "fallbacks": self.guard.fallbacks,
        })
        if session.config.mode == SessionMode.STRESS:
            caller = self.callers.get_current_caller()
            snapshot["caller"] = caller.model_dump(mode="json") if caller else None
            snapshot["queue"] = self.callers.get_status().model_dump(mode="json")
        return snapshot
