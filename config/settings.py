"""
Configuration loader for the Resonance session orchestrator.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "anthropic"                # "anthropic" | "openai"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.8
    max_tokens: int = 300                      # spoken replies stay short
    api_key: str = ""


@dataclass
class TTSConfig:
    base_url: str = "https://api.elevenlabs.io"
    api_key: str = ""
    model_id: str = "eleven_multilingual_v2"
    default_voice_id: str = ""
    timeout_s: float = 30.0


@dataclass
class QuotaConfig:
    daily_limit: float = 50.0                  # USD per day
    warning_threshold: float = 0.8             # fraction of daily limit
    critical_threshold: float = 0.95


@dataclass
class RetryConfig:
    max_attempts: int = 3
    initial_backoff_s: float = 1.0            # 1s, 2s, 4s, ...
    max_backoff_s: float = 4.0


@dataclass
class VADConfig:
    noise_floor: float = 0.1
    min_speech_ms: int = 150
    buffer_size: int = 5


@dataclass
class TimingConfig:
    ms_per_word: int = 450                     # playback estimate from word count
    playback_kbps: int = 128                   # playback estimate from byte size
    min_playback_ms: int = 2000
    max_playback_ms: int = 60000
    playback_poll_ms: int = 500
    playback_poll_limit_ms: int = 30000
    tail_buffer_ms: int = 300                  # avoids picking up our own echo
    mock_ms_per_char: int = 50
    mock_max_delay_ms: int = 5000
    stamina_decay_per_minute: float = 0.5


@dataclass
class StorageConfig:
    backend: str = "memory"                    # "memory" | "file"
    data_dir: str = "./data/reports"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "Resonance"
    debug: bool = False
    default_language: str = "id"
    llm: LLMConfig = field(default_factory=LLMConfig)
    tts: TTSConfig = field(default_factory=TTSConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    vad: VADConfig = field(default_factory=VADConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _build_section(cls, raw: dict[str, Any]):
    """Construct a config dataclass from a YAML mapping, rejecting unknown keys."""
    defaults = cls()
    unknown = set(raw) - set(vars(defaults))
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    values = {}
    for name, default in vars(defaults).items():
        value = raw.get(name, default)
        if value is not None and default is not None and not isinstance(value, type(default)):
            # YAML gives ints where floats are expected
            if isinstance(default, float) and isinstance(value, int):
                value = float(value)
            else:
                raise ValueError(
                    f"{cls.__name__}.{name} must be {type(default).__name__}, got {type(value).__name__}"
                )
        values[name] = value
    return cls(**values)


def validate_settings(settings: Settings) -> Settings:
    """Range checks that dataclasses cannot express."""
    if settings.quota.daily_limit <= 0:
        raise ValueError("quota.daily_limit must be positive")
    if not 0 < settings.quota.warning_threshold <= settings.quota.critical_threshold <= 1:
        raise ValueError("quota thresholds must satisfy 0 < warning <= critical <= 1")
    if settings.retry.max_attempts < 1:
        raise ValueError("retry.max_attempts must be at least 1")
    if settings.vad.noise_floor <= 0:
        raise ValueError("vad.noise_floor must be positive")
    if settings.vad.buffer_size < 1:
        raise ValueError("vad.buffer_size must be at least 1")
    if settings.timing.min_playback_ms > settings.timing.max_playback_ms:
        raise ValueError("timing.min_playback_ms must not exceed timing.max_playback_ms")
    if settings.default_language not in ("id", "en"):
        raise ValueError("default_language must be 'id' or 'en'")
    return settings


_SECTIONS = {
    "llm": LLMConfig,
    "tts": TTSConfig,
    "quota": QuotaConfig,
    "retry": RetryConfig,
    "vad": VADConfig,
    "timing": TimingConfig,
    "storage": StorageConfig,
    "logging": LoggingConfig,
}


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "RESONANCE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.default_language = raw.get("default_language", settings.default_language)

        for section, cls in _SECTIONS.items():
            if section in raw:
                setattr(settings, section, _build_section(cls, raw[section] or {}))

    _settings = validate_settings(settings)
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
