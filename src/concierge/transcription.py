"""Audio transcription over an ordered chain of interchangeable backends.

Backends (default order, configurable):
1. local-whisper  - MLX Whisper on Apple Silicon (pip install mlx-whisper)
2. groq-whisper   - Groq hosted whisper-large-v3
3. openai-whisper - OpenAI hosted whisper-1, only when OPENAI_API_KEY is set

Files are validated before any backend is called: accepted extensions are
.mp3 .wav .m4a .mp4 .webm .ogg, maximum size 25 MiB.
"""

import asyncio
import dataclasses
import logging
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from concierge.cancellation import CancelToken
from concierge.classifier import TranscriptAnalysis
from concierge.config import TranscriptionConfig
from concierge.errors import BackendUnavailable, ConciergeError, FileTooLarge, UnsupportedFormat
from concierge.fallback import BackendDescriptor, BackendResult, FallbackChain

logger = logging.getLogger(__name__)

# MLX Whisper is only importable on macOS Apple Silicon
_mlx_whisper = None
if platform.system() == "Darwin" and platform.machine() == "arm64":
    try:
        import mlx_whisper

        _mlx_whisper = mlx_whisper
    except ImportError:
        logger.info("MLX Whisper not installed; pip install mlx-whisper")

SUPPORTED_EXTENSIONS = (".mp3", ".wav", ".m4a", ".mp4", ".webm", ".ogg")
MAX_AUDIO_BYTES = 25 * 1024 * 1024  # Hosted Whisper upload limit


@dataclass(frozen=True)
class AudioFileInfo:
    path: Path
    size: int
    extension: str

    @property
    def size_mb(self) -> float:
        return self.size / 1024 / 1024


def validate_audio_metadata(filename: str, size: int | None = None) -> str:
    """Check name and (when known) size without touching the file.

    Returns the normalized extension.
    """
    extension = Path(filename).suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFormat(extension)
    if size is not None and size > MAX_AUDIO_BYTES:
        logger.info(f"File size: {size / 1024 / 1024:.2f}MB")
        raise FileTooLarge(size, MAX_AUDIO_BYTES)
    return extension


def validate_audio_file(path: str | Path) -> AudioFileInfo:
    """Pre-flight check of an audio file.

    Raises:
        UnsupportedFormat: extension not accepted.
        FileTooLarge: file exceeds 25 MiB.
        ConciergeError: file does not exist.
    """
    audio_path = Path(path)
    validate_audio_metadata(audio_path.name)
    try:
        size = audio_path.stat().st_size
    except FileNotFoundError:
        raise ConciergeError(
            f"audio file not found: {audio_path}", user_message="The audio file could not be found."
        ) from None
    extension = validate_audio_metadata(audio_path.name, size)
    return AudioFileInfo(path=audio_path, size=size, extension=extension)


@dataclass(frozen=True)
class Segment:
    """One timed span of transcribed speech (seconds)."""
    start: float
    end: float
    text: str

    @classmethod
    def from_dict(cls, data: dict) -> "Segment":
        return cls(
            start=float(data.get("start", 0.0)),
            end=float(data.get("end", 0.0)),
            text=str(data.get("text", "")).strip(),
        )


@dataclass(frozen=True)
class TranscriptionOptions:
    language: str = "auto"
    include_timestamps: bool = False
    clean: bool = True
    analyze: bool = True
    output_format: str = "text"


@dataclass(frozen=True)
class TranscriptionRequest:
    """Input handed to every backend of the chain."""
    path: Path
    language: str = "auto"
    include_timestamps: bool = False

    @property
    def language_hint(self) -> str | None:
        return None if self.language in ("", "auto") else self.language


@dataclass(frozen=True)
class TranscribedAudio:
    """Raw backend output."""
    text: str
    segments: tuple[Segment, ...] | None = None


@dataclass(frozen=True)
class TranscriptionResult:
    """Transcript plus optional enrichment. Each optional field is set once."""
    text: str
    service: str
    timestamps: tuple[Segment, ...] | None = None
    cleaned_text: str | None = None
    corrections_count: int | None = None
    issues_fixed: tuple[str, ...] | None = None
    analysis: TranscriptAnalysis | None = None

    @property
    def freshest_text(self) -> str:
        return self.cleaned_text if self.cleaned_text is not None else self.text

    def with_cleaning(
        self, cleaned_text: str, corrections_count: int, issues_fixed: list[str]
    ) -> "TranscriptionResult":
        if self.cleaned_text is not None:
            raise ValueError("cleaned text is already set")
        return dataclasses.replace(
            self,
            cleaned_text=cleaned_text,
            corrections_count=corrections_count,
            issues_fixed=tuple(issues_fixed),
        )

    def with_analysis(self, analysis: TranscriptAnalysis) -> "TranscriptionResult":
        if self.analysis is not None:
            raise ValueError("analysis is already set")
        return dataclasses.replace(self, analysis=analysis)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"text": self.text, "service": self.service}
        if self.timestamps is not None:
            data["timestamps"] = [dataclasses.asdict(s) for s in self.timestamps]
        if self.cleaned_text is not None:
            data["cleaned_text"] = self.cleaned_text
            data["corrections_count"] = self.corrections_count
            data["issues_fixed"] = list(self.issues_fixed or ())
        if self.analysis is not None:
            data["analysis"] = self.analysis.model_dump()
        return data


# --- Backends ---


class LocalWhisperBackend:
    """Local inference with MLX Whisper on Apple Silicon."""

    name = "local-whisper"

    def __init__(self, model_repo: str):
        self.model_repo = model_repo

    @property
    def available(self) -> bool:
        return _mlx_whisper is not None

    async def transcribe(self, request: TranscriptionRequest) -> BackendResult[TranscribedAudio]:
        if not self.available:
            raise BackendUnavailable("Local Whisper not available (requires macOS Apple Silicon + mlx-whisper)")

        logger.info(f"Starting local Whisper transcription ({self.model_repo})...")
        # Run inference in a thread to avoid blocking the event loop
        output = await asyncio.to_thread(
            _mlx_whisper.transcribe,
            str(request.path),
            path_or_hf_repo=self.model_repo,
            language=request.language_hint,
        )
        segments = None
        if request.include_timestamps:
            segments = tuple(Segment.from_dict(s) for s in output.get("segments") or [])
        return BackendResult.success(TranscribedAudio(text=output.get("text", "").strip(), segments=segments))


class HostedWhisperBackend:
    """OpenAI-compatible /audio/transcriptions endpoint (Groq, OpenAI)."""

    def __init__(
        self,
        name: str,
        base_url: str,
        model: str,
        api_key: str,
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._api_key = api_key
        self.timeout = timeout
        self._client = client

    async def transcribe(self, request: TranscriptionRequest) -> BackendResult[TranscribedAudio]:
        logger.info(f"Starting {self.name} transcription...")
        audio = await asyncio.to_thread(request.path.read_bytes)

        data = {
            "model": self.model,
            "response_format": "verbose_json" if request.include_timestamps else "json",
            "temperature": "0",
        }
        if request.language_hint:
            data["language"] = request.language_hint
        files = {"file": (request.path.name, audio)}
        headers = {"Authorization": f"Bearer {self._api_key}"}
        url = f"{self.base_url}/audio/transcriptions"

        try:
            if self._client is not None:
                response = await self._client.post(url, data=data, files=files, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, data=data, files=files, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            return BackendResult.failure(f"HTTP {e.response.status_code} from {self.name}")
        except (httpx.HTTPError, ValueError) as e:
            return BackendResult.failure(f"{type(e).__name__}: {e}")

        segments = None
        if request.include_timestamps and payload.get("segments"):
            segments = tuple(Segment.from_dict(s) for s in payload["segments"])
        return BackendResult.success(TranscribedAudio(text=str(payload.get("text", "")).strip(), segments=segments))


def build_backends(config: TranscriptionConfig) -> list[BackendDescriptor]:
    """Instantiate the configured backends in their configured priority order.

    Hosted backends without an API key are left out of the chain.
    """
    factories = {
        "local-whisper": lambda: LocalWhisperBackend(config.local_model),
        "groq-whisper": lambda: HostedWhisperBackend(
            "groq-whisper", config.groq_base_url, config.groq_model, config.groq_api_key,
            timeout=config.backend_timeout,
        ) if config.groq_api_key else None,
        "openai-whisper": lambda: HostedWhisperBackend(
            "openai-whisper", config.openai_base_url, config.openai_model, config.openai_api_key,
            timeout=config.backend_timeout,
        ) if config.openai_api_key else None,
    }

    descriptors = []
    for priority, name in enumerate(config.backends):
        factory = factories.get(name)
        if factory is None:
            logger.warning(f"Unknown transcription backend '{name}', skipping")
            continue
        backend = factory()
        if backend is None:
            logger.info(f"Backend {name} has no API key configured, skipping")
            continue
        descriptors.append(
            BackendDescriptor(
                name=name,
                priority=priority,
                invoke=backend.transcribe,
                timeout=config.backend_timeout,
            )
        )
    return descriptors


class TranscriptionService:
    """Validate -> fallback chain -> post-processing."""

    def __init__(
        self,
        backends: list[BackendDescriptor],
        chain: FallbackChain | None = None,
        post_processor=None,
    ):
        self.backends = backends
        self.chain = chain or FallbackChain()
        self.post_processor = post_processor

    async def transcribe(
        self,
        path: str | Path,
        options: TranscriptionOptions | None = None,
        token: CancelToken | None = None,
    ) -> TranscriptionResult:
        """Transcribe one audio file.

        Raises:
            UnsupportedFormat, FileTooLarge: before any backend is called.
            ChainExhausted: every backend failed.
        """
        options = options or TranscriptionOptions()
        info = validate_audio_file(path)
        logger.info(f"Audio file validated: {info.size_mb:.2f}MB")

        request = TranscriptionRequest(
            path=info.path,
            language=options.language,
            include_timestamps=options.include_timestamps or options.output_format in ("srt", "vtt"),
        )
        outcome = await self.chain.run(request, self.backends, token)
        logger.info(f"Transcription completed using {outcome.service}")

        result = TranscriptionResult(
            text=outcome.value.text,
            service=outcome.service,
            timestamps=outcome.value.segments,
        )
        if self.post_processor is not None and result.text:
            result = await self.post_processor.run(result, clean=options.clean, analyze=options.analyze)
        return result
