"""
Core data models for the Resonance voice-training system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class SessionMode(str, Enum):
    SINGLE = "single"
    STRESS = "stress"


class SessionState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class Language(str, Enum):
    INDONESIAN = "id"
    ENGLISH = "en"


class Sensitivity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class NoiseType(str, Enum):
    OFFICE = "office"
    RAIN = "rain"
    TRAFFIC = "traffic"
    CAFE = "cafe"


class DisruptionType(str, Enum):
    VOICE_VARIATION = "voice_variation"
    BACKGROUND_NOISE = "background_noise"
    HARDWARE_FAILURE = "hardware_failure"
    CONTINUOUS_NOISE_START = "continuous_noise_start"
    CONTINUOUS_NOISE_STOP = "continuous_noise_stop"


class HardwareFailureKind(str, Enum):
    MIC_MUTE = "mic_mute"
    CONNECTION_DROP = "connection_drop"
    RANDOM = "random"


class Emotion(str, Enum):
    NEUTRAL = "neutral"
    HOSTILE = "hostile"
    HAPPY = "happy"
    FRUSTRATED = "frustrated"
    ANXIOUS = "anxious"


class CallerMood(str, Enum):
    NEUTRAL = "neutral"
    HOSTILE = "hostile"
    FRUSTRATED = "frustrated"
    ANXIOUS = "anxious"
    DEMANDING = "demanding"


class CallerScenario(str, Enum):
    COMPLAINT = "complaint"
    NEGOTIATION = "negotiation"
    OBJECTION = "objection"
    CRISIS = "crisis"
    INQUIRY = "inquiry"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


class Speaker(str, Enum):
    USER = "user"
    AI = "ai"


# ──────────────────────────────────────────────────────────────
#  Metrics & conversation record
# ──────────────────────────────────────────────────────────────

class SessionMetrics(BaseModel):
    """Running speech metrics for the active session."""
    pace: float = 0.0                         # words per minute
    confidence: float = 0.0                   # 0–100
    clarity: float = 0.0                      # 0–100
    filler_word_count: int = 0
    duration_s: int = 0
    emotional_state: Emotion = Emotion.NEUTRAL


class ConversationTurn(BaseModel):
    speaker: Speaker
    text: str
    timestamp: datetime = Field(default_factory=_utcnow)
    emotion: Optional[Emotion] = None         # AI turns only
    has_hesitation: bool = False              # user turns only
    filler_count: int = 0


class TelemetrySample(BaseModel):
    timestamp: datetime = Field(default_factory=_utcnow)
    state: Emotion
    intensity: float = Field(0.0, ge=0.0, le=1.0)


class ContextDocument(BaseModel):
    """Reference material the AI partner can draw on (already extracted to text)."""
    name: str
    content: str


class ConversationContext(BaseModel):
    """Everything the text-generation collaborator needs for one turn."""
    scenario: str
    language: Language = Language.INDONESIAN
    ai_role: str = ""
    documents: list[ContextDocument] = []
    history: list[ConversationTurn] = []


# ──────────────────────────────────────────────────────────────
#  Disruptions
# ──────────────────────────────────────────────────────────────

class DisruptionConfig(BaseModel):
    """Environmental disruption settings for one session."""
    enabled: bool = False
    voice_variation: bool = True              # random pitch/speed distortion
    background_noise: bool = True             # ambient noise bed
    hardware_failure: bool = True             # mic mute / connection drop
    noise_type: NoiseType = NoiseType.OFFICE
    intensity: float = Field(0.5, ge=0.0, le=1.0)   # magnitude and per-tick probability
    frequency_s: float = Field(30.0, gt=0.0)  # seconds between automatic ticks


class DisruptionEvent(BaseModel):
    type: DisruptionType
    timestamp_ms: float
    parameters: dict[str, Any] = {}
    duration_ms: float = 0.0                  # -1 = continuous


class ActiveDisruption(BaseModel):
    event: DisruptionEvent
    started_at_ms: float

    @property
    def is_continuous(self) -> bool:
        return self.event.duration_ms < 0

    def is_expired(self, now_ms: float) -> bool:
        if self.is_continuous:
            return False
        return now_ms - self.started_at_ms >= self.event.duration_ms


# ──────────────────────────────────────────────────────────────
#  Stress mode — callers & stamina
# ──────────────────────────────────────────────────────────────

class VoiceInfo(BaseModel):
    """A synthesized voice offered by the speech-synthesis collaborator."""
    voice_id: str
    name: str = ""


class Caller(BaseModel):
    """A synthetic conversation partner in the stress-mode queue."""
    model_config = ConfigDict(frozen=True)

    position: int
    name: str
    gender: Gender
    mood: CallerMood
    scenario: CallerScenario
    difficulty: int = Field(ge=1, le=5)
    objective: str
    estimated_duration_s: int
    voice_id: Optional[str] = None


class StaminaRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp_ms: float
    stamina: float
    performance_score: float
    metrics: SessionMetrics


class QueueStatus(BaseModel):
    queue_length: int = 0
    current_position: int = 0                 # 1-based
    remaining: int = 0
    is_active: bool = False
    progress: float = 0.0                     # percent of queue reached
    stamina: float = 100.0
    inter_call_delay_s: int = 5
    difficulty_curve: int = 50
    completed_calls: int = 0
    total_call_time_s: float = 0.0


class CallerTransition(BaseModel):
    type: str = "caller_transition"
    previous_index: int
    current_index: int
    next_caller: Caller
    status: QueueStatus


# ──────────────────────────────────────────────────────────────
#  Session configuration, session & report
# ──────────────────────────────────────────────────────────────

class SessionConfig(BaseModel):
    """Host-supplied configuration for a single training session."""
    scenario: str = "customer-complaint"
    language: Language = Language.INDONESIAN
    mode: SessionMode = SessionMode.SINGLE
    queue_length: int = Field(5, ge=1, le=20)             # stress mode only
    inter_call_delay_s: int = Field(5, ge=0, le=60)       # stress mode only
    difficulty_curve: int = Field(50, ge=0, le=100)       # stress mode only
    disruption: DisruptionConfig = Field(default_factory=DisruptionConfig)
    sensitivity: Sensitivity = Sensitivity.MEDIUM
    mock_mode: bool = False                               # no paid calls, canned text/audio
    voice_id: Optional[str] = None                        # AI voice for single mode
    available_voices: list[VoiceInfo] = []
    context_documents: list[ContextDocument] = []

    @field_validator("scenario")
    @classmethod
    def _scenario_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("scenario must not be empty")
        return value


class Session(BaseModel):
    id: str = Field(default_factory=lambda: f"session_{uuid.uuid4().hex[:12]}")
    config: SessionConfig
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None
    metrics: SessionMetrics = Field(default_factory=SessionMetrics)
    history: list[ConversationTurn] = []
    telemetry: list[TelemetrySample] = []
    user_word_count: int = 0


class SessionReport(BaseModel):
    session_id: str
    scenario: str
    mode: SessionMode
    language: Language
    started_at: datetime
    ended_at: datetime
    duration_s: int
    score: int
    grade: str
    metrics: SessionMetrics
    conversation_history: list[ConversationTurn] = []
    emotional_telemetry: list[TelemetrySample] = []
    disruption_statistics: dict[str, Any] = {}
    disruption_log: list[DisruptionEvent] = []
    queue_status: Optional[QueueStatus] = None
    stamina_history: list[StaminaRecord] = []
    created_at: datetime = Field(default_factory=_utcnow)
