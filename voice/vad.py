"""
Voice Activity Detector — speaking/silent gate for turn-taking.

Turns a stream of per-chunk RMS energy values into a binary speaking signal:
- Adaptive threshold: noise floor raised by a per-sensitivity decibel offset
  (low = 20 dB, medium = 12 dB, high = 5 dB above the floor)
- Smoothing: arithmetic mean over a short ring buffer of recent samples
- Debounce: speech only ends once the minimum speech duration since onset
  has elapsed, so short pauses mid-sentence do not end the turn
- Calibration: re-derives the noise floor from a batch of ambient samples
"""
from __future__ import annotations

import math
import structlog
from collections import deque
from typing import Any, Callable, Iterable, Optional

import numpy as np

from core.errors import InvalidInput
from models.schemas import Sensitivity
from utils.clock import Clock, now_ms

logger = structlog.get_logger()


SENSITIVITY_OFFSETS_DB = {
    Sensitivity.LOW: 20.0,
    Sensitivity.MEDIUM: 12.0,
    Sensitivity.HIGH: 5.0,
}

DEFAULT_NOISE_FLOOR = 0.1
DEFAULT_MIN_SPEECH_MS = 150
DEFAULT_BUFFER_SIZE = 5
MIN_NOISE_FLOOR = 1e-4          # digital silence would otherwise give a zero floor


def detection_threshold(noise_floor: float, sensitivity: Sensitivity) -> float:
    """noise_floor × 10^(offset_dB / 20)."""
    return noise_floor * (10 ** (SENSITIVITY_OFFSETS_DB[sensitivity] / 20.0))


def chunk_energy(chunk: bytes) -> float:
    """RMS amplitude of a signed 16-bit little-endian PCM chunk, normalized to [0, 1]."""
    usable = len(chunk) - (len(chunk) % 2)
    if usable <= 0:
        return 0.0
    samples = np.frombuffer(chunk[:usable], dtype="<i2").astype(np.float64) / 32768.0
    rms = float(np.sqrt(np.mean(samples ** 2)))
    return min(1.0, rms)


def _coerce_sensitivity(value: Any) -> Sensitivity:
    try:
        return Sensitivity(value)
    except ValueError:
        raise InvalidInput(f"Unknown sensitivity tier: {value!r}") from None


class VoiceActivityDetector:
    """
    Energy-based voice activity detector.

    Usage:
        vad = VoiceActivityDetector()
        vad.initialize(Sensitivity.MEDIUM, noise_floor=0.05)
        vad.set_callbacks(on_voice_start=..., on_voice_end=...)
        speaking = vad.process_sample(chunk_energy(pcm))
    """

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE, clock: Clock = now_ms):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self._clock = clock
        self._buffer: deque[float] = deque(maxlen=buffer_size)
        self._sensitivity = Sensitivity.MEDIUM
        self._noise_floor = DEFAULT_NOISE_FLOOR
        self._threshold = detection_threshold(self._noise_floor, self._sensitivity)
        self._min_duration_ms = DEFAULT_MIN_SPEECH_MS
        self._speaking = False
        self._onset_ms: Optional[float] = None
        self._smoothed = 0.0
        self._samples_processed = 0
        self._onsets = 0
        self._on_voice_start: Optional[Callable[[float], None]] = None
        self._on_voice_end: Optional[Callable[[float], None]] = None

    # ── Setup ─────────────────────────────────────────────

    def initialize(
        self,
        sensitivity: Sensitivity | str = Sensitivity.MEDIUM,
        noise_floor: float = DEFAULT_NOISE_FLOOR,
        min_duration_ms: int = DEFAULT_MIN_SPEECH_MS,
    ) -> None:
        self._sensitivity = _coerce_sensitivity(sensitivity)
        self._validate_floor(noise_floor)
        if min_duration_ms < 0:
            raise InvalidInput("min_duration_ms must not be negative")
        self._noise_floor = float(noise_floor)
        self._min_duration_ms = min_duration_ms
        self._samples_processed = 0
        self._onsets = 0
        self.reset()
        self._recompute_threshold()
        logger.info("vad_initialized",
                    sensitivity=self._sensitivity.value,
                    noise_floor=round(self._noise_floor, 5),
                    threshold=round(self._threshold, 5),
                    min_duration_ms=min_duration_ms)

    def set_callbacks(
        self,
        on_voice_start: Optional[Callable[[float], None]] = None,
        on_voice_end: Optional[Callable[[float], None]] = None,
    ) -> None:
        """on_voice_start(smoothed_energy); on_voice_end(speech_duration_ms)."""
        self._on_voice_start = on_voice_start
        self._on_voice_end = on_voice_end

    @staticmethod
    def _validate_floor(value: float) -> None:
        if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
            raise InvalidInput(f"noise floor must be a finite positive number, got {value!r}")

    def _recompute_threshold(self) -> None:
        self._threshold = detection_threshold(self._noise_floor, self._sensitivity)

    # ── Detection ─────────────────────────────────────────

    def process_sample(self, energy: float) -> bool:
        """Feed one chunk's RMS energy. Returns the speaking flag after the update."""
        if not isinstance(energy, (int, float)) or not math.isfinite(energy):
            return self._speaking
        self._buffer.append(min(1.0, max(0.0, float(energy))))
        self._samples_processed += 1
        self._smoothed = sum(self._buffer) / len(self._buffer)
        now = self._clock()

        if self._smoothed > self._threshold:
            if not self._speaking:
                self._speaking = True
                self._onset_ms = now
                self._onsets += 1
                logger.debug("vad_voice_start", energy=round(self._smoothed, 5))
                self._notify(self._on_voice_start, self._smoothed)
        elif self._speaking:
            elapsed = now - (self._onset_ms or now)
            if elapsed > self._min_duration_ms:
                self._speaking = False
                logger.debug("vad_voice_end", duration_ms=round(elapsed, 1))
                self._notify(self._on_voice_end, elapsed)

        return self._speaking

    @staticmethod
    def _notify(callback: Optional[Callable[[float], None]], value: float) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception as e:
            logger.error("vad_callback_failed", error=str(e))

    # ── Calibration & tuning ──────────────────────────────

    def calibrate(self, samples: Iterable[float]) -> float:
        """Set the noise floor to the mean of ``samples`` (non-finite values skipped)."""
        samples = list(samples)
        if not samples:
            raise InvalidInput("calibration requires at least one sample")
        finite = [
            float(s) for s in samples
            if isinstance(s, (int, float)) and math.isfinite(s)
        ]
        if not finite:
            raise InvalidInput("calibration samples contained no finite values")
        self._noise_floor = max(MIN_NOISE_FLOOR, sum(finite) / len(finite))
        self._recompute_threshold()
        logger.info("vad_calibrated",
                    samples=len(finite),
                    skipped=len(samples) - len(finite),
                    noise_floor=round(self._noise_floor, 5),
                    threshold=round(self._threshold, 5))
        return self._noise_floor

    def update_sensitivity(self, sensitivity: Sensitivity | str) -> None:
        self._sensitivity = _coerce_sensitivity(sensitivity)
        self._recompute_threshold()
        logger.info("vad_sensitivity_updated",
                    sensitivity=self._sensitivity.value,
                    threshold=round(self._threshold, 5))

    def set_noise_floor(self, noise_floor: float) -> None:
        self._validate_floor(noise_floor)
        self._noise_floor = float(noise_floor)
        self._recompute_threshold()

    def reset(self) -> None:
        """Clear the smoothing buffer and speaking flag; keeps floor and threshold."""
        self._buffer.clear()
        self._speaking = False
        self._onset_ms = None
        self._smoothed = 0.0

    # ── Inspection ────────────────────────────────────────

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def noise_floor(self) -> float:
        return self._noise_floor

    @property
    def sensitivity(self) -> Sensitivity:
        return self._sensitivity

    @property
    def smoothed_energy(self) -> float:
        return self._smoothed

    def get_statistics(self) -> dict[str, Any]:
        return {
            "sensitivity": self._sensitivity.value,
            "noise_floor": self._noise_floor,
            "threshold": self._threshold,
            "min_duration_ms": self._min_duration_ms,
            "is_speaking": self._speaking,
            "buffer_fill": len(self._buffer),
            "buffer_size": self._buffer.maxlen,
            "smoothed_energy": self._smoothed,
            "samples_processed": self._samples_processed,
            "onsets": self._onsets,
        }
