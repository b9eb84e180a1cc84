"""Tests for concierge.config: load, env overrides, save and set."""

import json

import pytest

from concierge.config import ConciergeConfig

ENV_VARS = (
    "GROQ_API_KEY",
    "OPENAI_API_KEY",
    "CONCIERGE_SLACK_BOT_TOKEN",
    "CONCIERGE_SLACK_APP_TOKEN",
    "CONCIERGE_PORTAL_URL",
    "CONCIERGE_TRANSCRIPTION_BACKENDS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoad:
    """Test loading and overrides."""

    def test_defaults_when_missing(self, tmp_path):
        config = ConciergeConfig.load(tmp_path / "missing.json")
        assert config.sessions.ttl_seconds == 300.0
        assert config.transcription.backends == ["local-whisper", "groq-whisper", "openai-whisper"]
        assert config.slack.enabled is False

    def test_file_values(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"browser": {"headless": False, "pool_size": 3}, "bogus": {"x": 1}}))

        config = ConciergeConfig.load(path)
        assert config.browser.headless is False
        assert config.browser.pool_size == 3

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "gsk-env")
        monkeypatch.setenv("CONCIERGE_SLACK_BOT_TOKEN", "xoxb-1")
        monkeypatch.setenv("CONCIERGE_SLACK_APP_TOKEN", "xapp-1")
        monkeypatch.setenv("CONCIERGE_TRANSCRIPTION_BACKENDS", "openai-whisper, groq-whisper")

        config = ConciergeConfig.load(tmp_path / "missing.json")
        assert config.classifier.api_key == "gsk-env"
        assert config.transcription.groq_api_key == "gsk-env"
        assert config.slack.enabled is True
        assert config.transcription.backends == ["openai-whisper", "groq-whisper"]


class TestSave:
    """Test persistence without secrets."""

    def test_secrets_not_written(self, tmp_path):
        config = ConciergeConfig()
        config.classifier.api_key = "gsk-secret"
        config.slack.bot_token = "xoxb-secret"
        path = tmp_path / "config.json"
        config.save(path)

        raw = path.read_text()
        assert "gsk-secret" not in raw
        assert "xoxb-secret" not in raw
        assert "api_key" not in json.loads(raw)["classifier"]

    def test_round_trip_settings(self, tmp_path):
        config = ConciergeConfig()
        config.invoice.invoice_link_policy = "abort"
        path = tmp_path / "config.json"
        config.save(path)
        assert ConciergeConfig.load(path).invoice.invoice_link_policy == "abort"

    def test_to_dict_blanks_secrets(self):
        config = ConciergeConfig()
        config.transcription.openai_api_key = "sk-1"
        assert config.to_dict()["transcription"]["openai_api_key"] == ""
        assert config.to_dict(include_secrets=True)["transcription"]["openai_api_key"] == "sk-1"


class TestSetValue:
    """Test CLI-style updates."""

    def test_coercion(self):
        config = ConciergeConfig()
        config.set_value("browser.headless", "false")
        config.set_value("browser.pool_size", "2")
        config.set_value("sessions.ttl_seconds", "120")
        config.set_value("transcription.backends", "groq-whisper,openai-whisper")

        assert config.browser.headless is False
        assert config.browser.pool_size == 2
        assert config.sessions.ttl_seconds == 120.0
        assert config.transcription.backends == ["groq-whisper", "openai-whisper"]

    def test_unknown_key(self):
        with pytest.raises(KeyError):
            ConciergeConfig().set_value("browser.color", "red")

    def test_secret_rejected(self):
        with pytest.raises(KeyError):
            ConciergeConfig().set_value("classifier.api_key", "gsk-x")
