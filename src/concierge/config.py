"""Concierge configuration management."""

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

CONCIERGE_HOME = Path.home() / ".concierge"
CONCIERGE_CONFIG = CONCIERGE_HOME / "config.json"
CONCIERGE_LOGS = CONCIERGE_HOME / "logs"
CONCIERGE_DOWNLOADS = CONCIERGE_HOME / "downloads"
CONCIERGE_OUTPUT = CONCIERGE_HOME / "output"

# Fields that must never be written to disk by save()
SECRET_FIELDS = {"api_key", "bot_token", "app_token", "groq_api_key", "openai_api_key"}


@dataclass
class BrowserConfig:
    """Playwright page environment settings."""

    headless: bool = True
    pool_size: int = 1
    navigation_timeout: float = 30.0
    step_timeout: float = 20.0
    download_timeout: float = 60.0
    render_timeout: float = 10.0  # Upper bound for async table rendering
    render_poll_interval: float = 0.25
    render_poll_backoff: float = 2.0
    render_poll_max_interval: float = 2.0


@dataclass
class InvoiceConfig:
    """Invoice portal automation settings."""

    portal_url: str = "https://www.sancorsalud.com.ar/login/asociados"
    download_dir: str = str(CONCIERGE_DOWNLOADS)
    download_file: bool = True
    resolve_timeout: float = 60.0  # Per classifier call during resolution
    # "continue": a missing invoice link is tolerated (section may already be visible)
    # "abort": a missing invoice link fails the run
    invoice_link_policy: str = "continue"


@dataclass
class ClassifierConfig:
    """Hosted generative model used for element resolution and post-processing."""

    base_url: str = "https://api.groq.com/openai/v1"
    model: str = "llama-3.1-8b-instant"
    temperature: float = 0.0
    timeout: float = 30.0
    api_key: str = ""


@dataclass
class TranscriptionConfig:
    """Speech-to-text fallback chain settings."""

    # Priority order, first entry is tried first
    backends: list[str] = field(
        default_factory=lambda: ["local-whisper", "groq-whisper", "openai-whisper"]
    )
    local_model: str = "mlx-community/whisper-large-v3-turbo"
    groq_base_url: str = "https://api.groq.com/openai/v1"
    groq_model: str = "whisper-large-v3"
    groq_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "whisper-1"
    openai_api_key: str = ""
    backend_timeout: float = 300.0
    default_language: str = "auto"
    clean_transcription: bool = True
    include_analysis: bool = True
    output_dir: str = str(CONCIERGE_OUTPUT)


@dataclass
class SessionConfig:
    """Per-conversation session settings."""

    ttl_seconds: float = 300.0  # Fixed 5 minute window for awaiting input
    sweep_interval_seconds: float = 30.0
    operation_timeout_seconds: float = 600.0  # Upper bound for one handled message


@dataclass
class SlackConfig:
    """Slack integration settings."""

    bot_token: str = ""
    app_token: str = ""
    enabled: bool = False


@dataclass
class ConciergeConfig:
    """Top-level Concierge configuration."""

    browser: BrowserConfig = field(default_factory=BrowserConfig)
    invoice: InvoiceConfig = field(default_factory=InvoiceConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    slack: SlackConfig = field(default_factory=SlackConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> "ConciergeConfig":
        """Load config from disk or return defaults.

        Env vars override file config for credentials and backend order.
        """
        config = cls()
        config_path = path or CONCIERGE_CONFIG
        if config_path.exists():
            data = json.loads(config_path.read_text())
            for section in fields(cls):
                if section.name in data:
                    target = getattr(config, section.name)
                    for k, v in data[section.name].items():
                        if hasattr(target, k):
                            setattr(target, k, v)

        # Env var overrides for secrets
        groq_key = os.environ.get("GROQ_API_KEY")
        openai_key = os.environ.get("OPENAI_API_KEY")
        slack_bot = os.environ.get("CONCIERGE_SLACK_BOT_TOKEN")
        slack_app = os.environ.get("CONCIERGE_SLACK_APP_TOKEN")

        if groq_key:
            config.classifier.api_key = groq_key
            config.transcription.groq_api_key = groq_key
        if openai_key:
            config.transcription.openai_api_key = openai_key
        if slack_bot:
            config.slack.bot_token = slack_bot
        if slack_app:
            config.slack.app_token = slack_app
        if config.slack.bot_token and config.slack.app_token:
            config.slack.enabled = True

        # Env var overrides for behavior
        portal_url = os.environ.get("CONCIERGE_PORTAL_URL")
        backends = os.environ.get("CONCIERGE_TRANSCRIPTION_BACKENDS")

        if portal_url:
            config.invoice.portal_url = portal_url
        if backends:
            config.transcription.backends = [b.strip() for b in backends.split(",") if b.strip()]

        return config

    def to_dict(self, include_secrets: bool = False) -> dict:
        data = asdict(self)
        if not include_secrets:
            for section in data.values():
                for key in SECRET_FIELDS & section.keys():
                    section[key] = ""
        return data

    def save(self, path: Path | None = None) -> None:
        """Persist non-secret config to disk."""
        config_path = path or CONCIERGE_CONFIG
        config_path.parent.mkdir(parents=True, exist_ok=True)
        data = self.to_dict()
        for section in data.values():
            for key in SECRET_FIELDS & section.keys():
                del section[key]
        config_path.write_text(json.dumps(data, indent=2))

    def set_value(self, dotted_key: str, raw_value: str) -> None:
        """Set ``section.key`` from a CLI string, coercing to the field type."""
        section_name, _, key = dotted_key.partition(".")
        section = getattr(self, section_name, None)
        if section is None or not key or not hasattr(section, key):
            raise KeyError(f"Unknown config key: {dotted_key}")
        if key in SECRET_FIELDS:
            raise KeyError(f"{dotted_key} is a secret; set it through the environment")

        current = getattr(section, key)
        if isinstance(current, bool):
            value = raw_value.lower() in ("1", "true", "yes", "on")
        elif isinstance(current, int):
            value = int(raw_value)
        elif isinstance(current, float):
            value = float(raw_value)
        elif isinstance(current, list):
            value = [v.strip() for v in raw_value.split(",") if v.strip()]
        else:
            value = raw_value
        setattr(section, key, value)


def ensure_concierge_home() -> None:
    """Create Concierge home directory structure."""
    CONCIERGE_HOME.mkdir(parents=True, exist_ok=True)
    CONCIERGE_LOGS.mkdir(parents=True, exist_ok=True)
    CONCIERGE_DOWNLOADS.mkdir(parents=True, exist_ok=True)
    CONCIERGE_OUTPUT.mkdir(parents=True, exist_ok=True)
