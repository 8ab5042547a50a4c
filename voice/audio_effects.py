"""
PCM16 audio effects used by the disruption engine.

All effects take and return signed 16-bit little-endian mono PCM and never
change the byte length of their input, since capture and streaming code
downstream assumes fixed framing.
"""
from __future__ import annotations

import io
import wave

import numpy as np

from models.schemas import NoiseType

SAMPLE_RATE = 16000
NOISE_MIX_GAIN = 0.3            # noise level at intensity 1.0, relative to full scale


def pcm16_to_float(audio: bytes) -> np.ndarray:
    return np.frombuffer(audio, dtype="<i2").astype(np.float32) / 32768.0


def float_to_pcm16(samples: np.ndarray) -> bytes:
    clipped = np.clip(samples, -1.0, 32767.0 / 32768.0)
    return (clipped * 32768.0).astype("<i2").tobytes()


def is_pcm16(audio: bytes) -> bool:
    return len(audio) > 0 and len(audio) % 2 == 0


# ══════════════════════════════════════════════════════════════
#  VOICE VARIATION
# ══════════════════════════════════════════════════════════════

def vary_voice(audio: bytes, pitch: float, speed: float, intensity: float) -> bytes:
    """
    Resample by ``pitch × speed`` and blend with the dry signal.

    Reading past the end pads with silence; reading short truncates, so the
    output always has exactly as many samples as the input.
    """
    if not is_pcm16(audio):
        return audio
    dry = pcm16_to_float(audio)
    n = dry.size
    rate = max(0.1, pitch * speed)
    positions = np.arange(n, dtype=np.float64) * rate
    wet = np.interp(positions, np.arange(n, dtype=np.float64), dry, right=0.0)
    mix = float(np.clip(intensity, 0.0, 1.0))
    return float_to_pcm16((1.0 - mix) * dry + mix * wet.astype(np.float32))


# ══════════════════════════════════════════════════════════════
#  NOISE SYNTHESIS
# ══════════════════════════════════════════════════════════════

def _normalize(samples: np.ndarray) -> np.ndarray:
    peak = float(np.max(np.abs(samples))) if samples.size else 0.0
    if peak <= 0:
        return samples.astype(np.float32)
    return (samples / peak).astype(np.float32)


def _white(n: int, rng: np.random.Generator) -> np.ndarray:
    return rng.standard_normal(n)


def _pink(n: int, rng: np.random.Generator) -> np.ndarray:
    # 1/f power spectrum shaped in the frequency domain
    spectrum = np.fft.rfft(rng.standard_normal(n))
    freqs = np.arange(spectrum.size, dtype=np.float64)
    freqs[0] = 1.0
    return np.fft.irfft(spectrum / np.sqrt(freqs), n)


def _brown(n: int, rng: np.random.Generator) -> np.ndarray:
    walk = np.cumsum(rng.standard_normal(n))
    return walk - np.linspace(walk[0], walk[-1], n)


def synthesize_noise(noise_type: NoiseType, n_samples: int, rng: np.random.Generator) -> np.ndarray:
    """Normalized noise for ``noise_type`` in [-1, 1]."""
    if n_samples <= 0:
        return np.zeros(0, dtype=np.float32)
    if n_samples < 2:
        return _normalize(_white(n_samples, rng))
    if noise_type == NoiseType.RAIN:
        samples = _white(n_samples, rng)
    elif noise_type == NoiseType.TRAFFIC:
        samples = _brown(n_samples, rng)
    elif noise_type == NoiseType.CAFE:
        # chatter: pink bed with a slow amplitude wobble
        wobble = 0.6 + 0.4 * np.sin(np.linspace(0, 6 * np.pi, n_samples))
        samples = _normalize(_pink(n_samples, rng)) * wobble + 0.2 * _normalize(_white(n_samples, rng))
    else:
        samples = _pink(n_samples, rng)
    return _normalize(samples)


def mix_noise(audio: bytes, noise_type: NoiseType, intensity: float, rng: np.random.Generator) -> bytes:
    if not is_pcm16(audio):
        return audio
    dry = pcm16_to_float(audio)
    noise = synthesize_noise(noise_type, dry.size, rng)
    gain = float(np.clip(intensity, 0.0, 1.0)) * NOISE_MIX_GAIN
    return float_to_pcm16(dry + gain * noise)


def noise_wav(
    noise_type: NoiseType,
    duration_ms: int,
    volume: float,
    rng: np.random.Generator,
    sample_rate: int = SAMPLE_RATE,
) -> bytes:
    """A mono PCM16 WAV clip of synthesized noise, suitable for looped playback."""
    n = max(1, int(sample_rate * duration_ms / 1000))
    samples = synthesize_noise(noise_type, n, rng) * float(np.clip(volume, 0.0, 1.0))
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(float_to_pcm16(samples))
    return buf.getvalue()
