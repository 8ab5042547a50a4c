"""
Tests for configuration loading and session config validation.

Coverage:
- Bundled settings.yaml loads and validates
- ${VAR} substitution from the environment
- Unknown keys, wrong types and bad ranges are rejected
- SessionConfig field bounds
"""
import pytest
import yaml
from pydantic import ValidationError

import config.settings as settings_module
from config.settings import Settings, load_settings, validate_settings
from models.schemas import DisruptionConfig, Language, SessionConfig, SessionMode


@pytest.fixture(autouse=True)
def reset_cached_settings(monkeypatch):
    monkeypatch.setattr(settings_module, "_settings", None)
    monkeypatch.delenv("RESONANCE_CONFIG", raising=False)


def write_config(tmp_path, data) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestLoadSettings:
    def test_bundled_file(self):
        settings = load_settings()
        assert settings.app_name == "Resonance"
        assert settings.retry.max_attempts == 3
        assert settings.vad.noise_floor == pytest.approx(0.1)
        assert settings.timing.tail_buffer_ms == 300
        assert settings_module.get_settings() is settings

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.quota.daily_limit == 50.0
        assert settings.storage.backend == "memory"

    def test_env_path(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {"app_name": "Trainer"})
        monkeypatch.setenv("RESONANCE_CONFIG", path)
        assert load_settings().app_name == "Trainer"

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_TTS_KEY", "secret-123")
        monkeypatch.delenv("TEST_UNSET_KEY", raising=False)
        path = write_config(tmp_path, {
            "tts": {"api_key": "${TEST_TTS_KEY}"},
            "llm": {"api_key": "${TEST_UNSET_KEY}"},
        })
        settings = load_settings(path)
        assert settings.tts.api_key == "secret-123"
        assert settings.llm.api_key == "${TEST_UNSET_KEY}"

    def test_int_coerced_to_float(self, tmp_path):
        settings = load_settings(write_config(tmp_path, {"quota": {"daily_limit": 10}}))
        assert settings.quota.daily_limit == 10.0
        assert isinstance(settings.quota.daily_limit, float)

    def test_unknown_key_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown VADConfig keys"):
            load_settings(write_config(tmp_path, {"vad": {"noise_flor": 0.2}}))

    def test_wrong_type_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            load_settings(write_config(tmp_path, {"retry": {"max_attempts": "three"}}))

    def test_partial_section_keeps_defaults(self, tmp_path):
        settings = load_settings(write_config(tmp_path, {"timing": {"tail_buffer_ms": 500}}))
        assert settings.timing.tail_buffer_ms == 500
        assert settings.timing.ms_per_word == 450


class TestValidateSettings:
    def test_defaults_valid(self):
        assert validate_settings(Settings())

    @pytest.mark.parametrize("mutate", [
        lambda s: setattr(s.quota, "daily_limit", 0.0),
        lambda s: setattr(s.quota, "warning_threshold", 0.99),
        lambda s: setattr(s.retry, "max_attempts", 0),
        lambda s: setattr(s.vad, "noise_floor", 0.0),
        lambda s: setattr(s.vad, "buffer_size", 0),
        lambda s: setattr(s.timing, "min_playback_ms", 90_000),
        lambda s: setattr(s, "default_language", "fr"),
    ])
    def test_invalid_values(self, mutate):
        settings = Settings()
        mutate(settings)
        with pytest.raises(ValueError):
            validate_settings(settings)


class TestSessionConfig:
    def test_defaults(self):
        config = SessionConfig()
        assert config.language == Language.INDONESIAN
        assert config.mode == SessionMode.SINGLE
        assert not config.disruption.enabled

    @pytest.mark.parametrize("field, value", [
        ("queue_length", 0),
        ("queue_length", 21),
        ("inter_call_delay_s", -1),
        ("inter_call_delay_s", 61),
        ("difficulty_curve", 101),
        ("language", "fr"),
        ("sensitivity", "extreme"),
        ("scenario", "   "),
    ])
    def test_out_of_range(self, field, value):
        with pytest.raises(ValidationError):
            SessionConfig(**{field: value})

    def test_disruption_bounds(self):
        with pytest.raises(ValidationError):
            DisruptionConfig(intensity=1.5)
        with pytest.raises(ValidationError):
            DisruptionConfig(frequency_s=0)

    def test_parses_json_payload(self):
        config = SessionConfig.model_validate({
            "scenario": "sales-negotiation",
            "language": "en",
            "mode": "stress",
            "disruption": {"enabled": True, "noise_type": "rain"},
        })
        assert config.mode == SessionMode.STRESS
        assert config.disruption.noise_type.value == "rain"
