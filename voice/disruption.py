"""
Disruption Engine — controlled environmental failures for resilience training.

Injects simulated problems into the audio path and session state:
- Voice variation: pitch/speed distortion of captured audio
- Background noise: one-shot noise mixed into a chunk, or a continuous
  noise bed played through the audio device
- Hardware failure: microphone mute or connection drop for a bounded
  time, with a 10 s cool-down between failures
- Automatic mode: a periodic tick that fires a random enabled disruption
  with probability equal to the configured intensity

Every mutating method is a no-op while the engine is disabled, including
timer callbacks that fire after a reset. Timers run on the orchestrator's
TaskScheduler; the engine owns no timer handles of its own beyond the
ScheduledTask references it needs to cancel.
"""
from __future__ import annotations

import asyncio
import random
import structlog
from collections import Counter
from typing import Any, Callable, Optional

import numpy as np
from pydantic import ValidationError

from core.errors import InvalidInput
from core.scheduler import ScheduledTask, TaskScheduler
from models.schemas import (
    ActiveDisruption, DisruptionConfig, DisruptionEvent, DisruptionType,
    HardwareFailureKind, NoiseType,
)
from utils.clock import Clock, now_ms
from voice.audio_effects import mix_noise, noise_wav, vary_voice

logger = structlog.get_logger()


HARDWARE_COOLDOWN_MS = 10_000
DEFAULT_HARDWARE_FAILURE_MS = 3_000
LOG_SOFT_CAP = 1000
LOG_TRIM_TO = 500
CONTINUOUS_DURATION = -1.0
NOISE_LOOP_MS = 10_000

VOICE_RANGES = {
    "pitch": (0.8, 1.2),
    "speed": (0.9, 1.1),
    "intensity": (0.3, 0.8),
}
RANDOM_NOISE_BURST_MS = (5_000, 15_000)
RANDOM_HARDWARE_FAILURE_MS = (2_000, 8_000)


class DisruptionEngine:
    """
    Usage:
        engine = DisruptionEngine(scheduler, audio=audio_service)
        engine.initialize(DisruptionConfig(enabled=True, intensity=0.4))
        engine.start_automatic_disruptions()
        chunk = engine.inject_background_noise(chunk)
        ...
        engine.cleanup()
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        audio=None,                     # core.services.AudioService, for the noise bed
        clock: Clock = now_ms,
        rng: Optional[random.Random] = None,
    ):
        self._scheduler = scheduler
        self._audio = audio
        self._clock = clock
        self._rng = rng or random.Random()
        self._np_rng = np.random.default_rng(self._rng.randrange(2 ** 32))
        self.config = DisruptionConfig()
        self._active: list[ActiveDisruption] = []
        self._log: list[DisruptionEvent] = []
        self._last_hardware_failure_ms: Optional[float] = None
        self._mic_muted = False
        self._connection_dropped = False
        self._continuous: Optional[ActiveDisruption] = None
        self._noise_level = 0.0
        self._auto_task: Optional[ScheduledTask] = None
        self._timers: list[ScheduledTask] = []
        self._ambient_start: Optional[asyncio.Task] = None
        self._generation = 0
        self._callbacks: dict[str, Optional[Callable[..., Any]]] = {
            "on_voice_variation": None,
            "on_noise_injection": None,
            "on_hardware_failure": None,
            "on_disruption_start": None,
            "on_disruption_end": None,
        }

    # ── Lifecycle ─────────────────────────────────────────

    def initialize(self, config: DisruptionConfig) -> None:
        self.reset()
        self.config = config
        self._noise_level = config.intensity
        logger.info("disruption_engine_initialized",
                    enabled=config.enabled,
                    voice_variation=config.voice_variation,
                    background_noise=config.background_noise,
                    hardware_failure=config.hardware_failure,
                    noise_type=config.noise_type.value,
                    intensity=config.intensity,
                    frequency_s=config.frequency_s)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def set_callbacks(self, **callbacks: Optional[Callable[..., Any]]) -> None:
        """Register any of on_voice_variation, on_noise_injection, on_hardware_failure,
        on_disruption_start, on_disruption_end."""
        for name, fn in callbacks.items():
            if name not in self._callbacks:
                raise InvalidInput(f"Unknown disruption callback: {name}")
            self._callbacks[name] = fn

    def _emit(self, name: str, *args: Any) -> None:
        fn = self._callbacks.get(name)
        if fn is None:
            return
        try:
            fn(*args)
        except Exception as e:
            logger.error("disruption_callback_failed", callback=name, error=str(e))

    def _log_event(self, type_: DisruptionType, parameters: dict[str, Any],
                   duration_ms: float = 0.0) -> DisruptionEvent:
        event = DisruptionEvent(
            type=type_,
            timestamp_ms=self._clock(),
            parameters=parameters,
            duration_ms=duration_ms,
        )
        self._log.append(event)
        if len(self._log) > LOG_SOFT_CAP:
            self._log = self._log[-LOG_TRIM_TO:]
        logger.info("disruption_logged", type=type_.value, duration_ms=duration_ms, **parameters)
        self._emit("on_disruption_start", event)
        return event

    # ── Audio effects ─────────────────────────────────────

    def apply_voice_variation(
        self,
        audio: bytes,
        pitch: Optional[float] = None,
        speed: Optional[float] = None,
        intensity: Optional[float] = None,
    ) -> bytes:
        """Distort a PCM16 chunk. Output has the same byte length as ``audio``."""
        if not self.config.enabled:
            return audio
        params = {
            "pitch": pitch if pitch is not None else self._rng.uniform(*VOICE_RANGES["pitch"]),
            "speed": speed if speed is not None else self._rng.uniform(*VOICE_RANGES["speed"]),
            "intensity": intensity if intensity is not None else self._rng.uniform(*VOICE_RANGES["intensity"]),
        }
        varied = vary_voice(audio, params["pitch"], params["speed"], params["intensity"])
        self._log_event(DisruptionType.VOICE_VARIATION, {k: round(v, 3) for k, v in params.items()})
        self._emit("on_voice_variation", params)
        return varied

    def inject_background_noise(
        self,
        audio: bytes,
        noise_type: Optional[NoiseType | str] = None,
        intensity: Optional[float] = None,
    ) -> bytes:
        """Mix synthesized noise into a PCM16 chunk. Output length matches input."""
        if not self.config.enabled:
            return audio
        resolved = self._resolve_noise_type(noise_type)
        level = self.config.intensity if intensity is None else max(0.0, min(1.0, intensity))
        noisy = mix_noise(audio, resolved, level, self._np_rng)
        self._log_event(DisruptionType.BACKGROUND_NOISE,
                        {"noise_type": resolved.value, "intensity": round(level, 3)})
        self._emit("on_noise_injection", resolved.value, level)
        return noisy

    def _resolve_noise_type(self, noise_type: Optional[NoiseType | str]) -> NoiseType:
        if noise_type is None:
            return self.config.noise_type
        try:
            return NoiseType(noise_type)
        except ValueError:
            logger.warning("unknown_noise_type", noise_type=str(noise_type),
                           fallback=NoiseType.OFFICE.value)
            return NoiseType.OFFICE

    # ── Hardware failures ─────────────────────────────────

    def simulate_hardware_failure(
        self,
        kind: HardwareFailureKind | str = HardwareFailureKind.RANDOM,
        duration_ms: float = DEFAULT_HARDWARE_FAILURE_MS,
    ) -> bool:
        """Mute the mic or drop the connection for ``duration_ms``. Returns True if it fired."""
        if not self.config.enabled:
            return False
        try:
            kind = HardwareFailureKind(kind)
        except ValueError:
            raise InvalidInput(f"Unknown hardware failure type: {kind!r}") from None
        if duration_ms <= 0:
            raise InvalidInput("hardware failure duration must be positive")

        now = self._clock()
        if (self._last_hardware_failure_ms is not None
                and now - self._last_hardware_failure_ms < HARDWARE_COOLDOWN_MS):
            logger.debug("hardware_failure_cooldown",
                         elapsed_ms=now - self._last_hardware_failure_ms)
            return False
        self._last_hardware_failure_ms = now

        if kind == HardwareFailureKind.RANDOM:
            kind = self._rng.choice([HardwareFailureKind.MIC_MUTE, HardwareFailureKind.CONNECTION_DROP])

        if kind == HardwareFailureKind.MIC_MUTE:
            self._mic_muted = True
        else:
            self._connection_dropped = True

        event = self._log_event(DisruptionType.HARDWARE_FAILURE,
                                {"failure": kind.value}, duration_ms=duration_ms)
        active = ActiveDisruption(event=event, started_at_ms=now)
        self._active.append(active)
        self._emit("on_hardware_failure", kind.value, duration_ms)

        generation = self._generation
        self._track(self._scheduler.call_later(
            duration_ms,
            lambda: self._clear_hardware_failure(kind, active, generation),
            name=f"clear_{kind.value}",
        ))
        return True

    def _clear_hardware_failure(self, kind: HardwareFailureKind,
                                active: ActiveDisruption, generation: int) -> None:
        if generation != self._generation:
            return
        if kind == HardwareFailureKind.MIC_MUTE:
            self._mic_muted = False
        else:
            self._connection_dropped = False
        if active in self._active:
            self._active.remove(active)
        logger.info("hardware_failure_cleared", failure=kind.value)
        self._emit("on_disruption_end", active.event)

    def is_mic_muted(self) -> bool:
        return self._mic_muted

    def is_connection_dropped(self) -> bool:
        return self._connection_dropped

    # ── Active disruptions ────────────────────────────────

    def get_active_disruptions(self) -> list[ActiveDisruption]:
        now = self._clock()
        self._active = [d for d in self._active if not d.is_expired(now)]
        return list(self._active)

    # ── Continuous noise ──────────────────────────────────

    def start_continuous_noise(self, noise_type: Optional[NoiseType | str] = None,
                               volume: Optional[float] = None) -> bool:
        if not self.config.enabled:
            return False
        if self._continuous is not None:
            self.stop_continuous_noise()
        resolved = self._resolve_noise_type(noise_type)
        if volume is not None:
            self._noise_level = max(0.0, min(1.0, volume))
        event = self._log_event(
            DisruptionType.CONTINUOUS_NOISE_START,
            {"noise_type": resolved.value, "volume": round(self._noise_level, 3)},
            duration_ms=CONTINUOUS_DURATION,
        )
        self._continuous = ActiveDisruption(event=event, started_at_ms=self._clock())
        self._active.append(self._continuous)
        if self._audio is not None:
            clip = noise_wav(resolved, NOISE_LOOP_MS, 1.0, self._np_rng)
            self._ambient_start = self._scheduler.spawn(
                self._audio.start_ambient(clip, self._noise_level), name="ambient_start")
        self._emit("on_noise_injection", resolved.value, self._noise_level)
        return True

    def stop_continuous_noise(self, release_audio: bool = True) -> bool:
        """
        End the noise bed. With ``release_audio`` the device stop runs as a
        scheduler task; teardown uses ``halt_continuous_noise`` instead.
        """
        if self._continuous is None:
            return False
        continuous, self._continuous = self._continuous, None
        if continuous in self._active:
            self._active.remove(continuous)
        if self._audio is not None and release_audio:
            self._scheduler.spawn(self._audio.stop_ambient(), name="ambient_stop")
        if self.config.enabled:
            self._log_event(DisruptionType.CONTINUOUS_NOISE_STOP,
                            {"noise_type": continuous.event.parameters.get("noise_type")},
                            duration_ms=self._clock() - continuous.started_at_ms)
        self._emit("on_disruption_end", continuous.event)
        return True

    async def halt_continuous_noise(self) -> bool:
        """Stop the noise bed and wait until the audio device has released it."""
        start, self._ambient_start = self._ambient_start, None
        if start is not None and not start.done():
            start.cancel()
        if not self.stop_continuous_noise(release_audio=False):
            return False
        if self._audio is not None:
            await self._audio.stop_ambient()
        return True

    @property
    def continuous_noise_active(self) -> bool:
        return self._continuous is not None

    def set_background_noise_level(self, level: float) -> float:
        self._noise_level = max(0.0, min(1.0, level))
        if self._audio is not None and self._continuous is not None:
            self._audio.set_ambient_volume(self._noise_level)
        return self._noise_level

    # ── Automatic disruptions ─────────────────────────────

    def start_automatic_disruptions(self, interval_ms: Optional[float] = None) -> bool:
        if not self.config.enabled:
            return False
        self.stop_automatic_disruptions()
        interval = interval_ms if interval_ms is not None else self.config.frequency_s * 1000.0
        self._auto_task = self._track(
            self._scheduler.call_every(interval, self._tick, name="disruption_tick"))
        logger.info("automatic_disruptions_started", interval_ms=interval)
        return True

    def stop_automatic_disruptions(self) -> None:
        if self._auto_task is not None:
            self._auto_task.cancel()
            self._auto_task = None
            logger.info("automatic_disruptions_stopped")

    @property
    def automatic_running(self) -> bool:
        return self._auto_task is not None and not self._auto_task.cancelled

    def _tick(self) -> None:
        if not self.config.enabled:
            return
        if self._rng.random() < self.config.intensity:
            self.trigger_random_disruption()

    def _enabled_types(self) -> list[DisruptionType]:
        types = []
        if self.config.voice_variation:
            types.append(DisruptionType.VOICE_VARIATION)
        if self.config.background_noise:
            types.append(DisruptionType.BACKGROUND_NOISE)
        if self.config.hardware_failure:
            types.append(DisruptionType.HARDWARE_FAILURE)
        return types

    def trigger_random_disruption(self) -> Optional[DisruptionType]:
        if not self.config.enabled:
            return None
        choices = self._enabled_types()
        if not choices:
            return None
        return self.trigger(self._rng.choice(choices))

    def trigger(self, disruption: DisruptionType | str) -> Optional[DisruptionType]:
        """Fire one disruption of the given kind outside of any audio chunk."""
        if not self.config.enabled:
            return None
        try:
            disruption = DisruptionType(disruption)
        except ValueError:
            raise InvalidInput(f"Unknown disruption type: {disruption!r}") from None

        if disruption == DisruptionType.VOICE_VARIATION:
            params = {name: round(self._rng.uniform(*bounds), 3)
                      for name, bounds in VOICE_RANGES.items()}
            self._log_event(DisruptionType.VOICE_VARIATION, params)
            self._emit("on_voice_variation", params)
        elif disruption == DisruptionType.BACKGROUND_NOISE:
            self.start_continuous_noise()
            burst_ms = self._rng.randint(*RANDOM_NOISE_BURST_MS)
            generation = self._generation
            self._track(self._scheduler.call_later(
                burst_ms, lambda: self._end_noise_burst(generation), name="noise_burst_end"))
        elif disruption == DisruptionType.HARDWARE_FAILURE:
            fired = self.simulate_hardware_failure(
                HardwareFailureKind.RANDOM, self._rng.randint(*RANDOM_HARDWARE_FAILURE_MS))
            if not fired:
                return None
        else:
            raise InvalidInput(f"Cannot trigger {disruption.value} directly")
        return disruption

    def _end_noise_burst(self, generation: int) -> None:
        if generation == self._generation:
            self.stop_continuous_noise()

    def _track(self, task: ScheduledTask) -> ScheduledTask:
        self._timers = [t for t in self._timers if t.live]
        self._timers.append(task)
        return task

    # ── Configuration ─────────────────────────────────────

    def get_configuration(self) -> DisruptionConfig:
        return self.config.model_copy()

    def update_configuration(self, **changes: Any) -> DisruptionConfig:
        """
        Apply field changes to the running configuration.

        The merged config is validated as a whole; on error nothing changes.
        Disabling stops the automatic tick and the noise bed. A new
        ``frequency_s`` re-arms a running automatic tick with the new period.
        """
        unknown = set(changes) - set(DisruptionConfig.model_fields)
        if unknown:
            raise InvalidInput(f"Unknown disruption settings: {', '.join(sorted(unknown))}")
        try:
            config = DisruptionConfig.model_validate({**self.config.model_dump(), **changes})
        except ValidationError as e:
            raise InvalidInput(f"Invalid disruption settings: {e}") from e

        was_running = self.automatic_running
        previous, self.config = self.config, config
        if "intensity" in changes:
            self.set_background_noise_level(config.intensity)
        if not config.enabled:
            self.stop_automatic_disruptions()
            self.stop_continuous_noise()
        elif was_running and config.frequency_s != previous.frequency_s:
            self.start_automatic_disruptions()
        logger.info("disruption_config_updated", changes=sorted(changes),
                    enabled=config.enabled, frequency_s=config.frequency_s)
        return config.model_copy()

    # ── Inspection ────────────────────────────────────────

    def get_log(self, limit: Optional[int] = None) -> list[DisruptionEvent]:
        """Logged events, oldest first; ``limit`` keeps only the most recent ones."""
        if limit is None:
            return list(self._log)
        if limit <= 0:
            return []
        return self._log[-limit:]

    def get_statistics(self) -> dict[str, Any]:
        by_type = Counter(e.type.value for e in self._log)
        return {
            "enabled": self.config.enabled,
            "total_disruptions": len(self._log),
            "by_type": dict(by_type),
            "active_disruptions": len(self.get_active_disruptions()),
            "mic_muted": self._mic_muted,
            "connection_dropped": self._connection_dropped,
            "continuous_noise": self._continuous is not None,
            "noise_level": self._noise_level,
        }

    # ── Teardown ──────────────────────────────────────────

    def reset(self) -> None:
        """Cancel this engine's timers and clear all disruption state."""
        self._generation += 1
        self.stop_automatic_disruptions()
        for task in self._timers:
            task.cancel()
        self._timers.clear()
        if self._continuous is not None and self._audio is not None:
            self._scheduler.spawn(self._audio.stop_ambient(), name="ambient_stop")
        self._continuous = None
        self._ambient_start = None
        self._active.clear()
        self._log.clear()
        self._mic_muted = False
        self._connection_dropped = False
        self._last_hardware_failure_ms = None

    def cleanup(self) -> None:
        self.reset()
        self.config = DisruptionConfig()
        logger.info("disruption_engine_cleaned_up")
