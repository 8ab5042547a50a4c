"""
Voice Subsystem — the real-time audio side of a training session.

Modules:
- vad: energy-based voice activity detection with adaptive threshold
- disruption: simulated voice distortion, noise and hardware failures
- audio_effects: PCM16 resampling and synthesized noise used by disruptions
- callers: stress-mode caller queue and stamina model
- analysis: filler/hesitation detection and speech metrics from transcripts
- synthesis: ElevenLabs text-to-speech client
"""
from voice.vad import (
    VoiceActivityDetector, SENSITIVITY_OFFSETS_DB,
    chunk_energy, detection_threshold,
)
from voice.disruption import DisruptionEngine, HARDWARE_COOLDOWN_MS
from voice.callers import CallerQueue, infer_gender, stamina_delta
from voice.analysis import (
    UtteranceAnalysis, analyze_utterance, count_fillers, detect_fillers,
    detect_hesitation, words_per_minute,
)

__all__ = [
    # VAD
    "VoiceActivityDetector", "SENSITIVITY_OFFSETS_DB",
    "chunk_energy", "detection_threshold",
    # Disruptions
    "DisruptionEngine", "HARDWARE_COOLDOWN_MS",
    # Caller queue
    "CallerQueue", "infer_gender", "stamina_delta",
    # Transcript analysis
    "UtteranceAnalysis", "analyze_utterance", "count_fillers", "detect_fillers",
    "detect_hesitation", "words_per_minute",
]
