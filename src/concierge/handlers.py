"""Task handlers registered with the command router.

/getInvoice username:<user> password:<pass>
    Log into the portal, read the latest invoice and send its PDF.

/transcribe [format:text|json|srt|vtt] [language:xx|auto] [clean:true|false] [analysis:true|false]
    Arm the conversation for an audio file; the next audio message is
    transcribed with these options.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable

from concierge.cancellation import CancelToken
from concierge.config import TranscriptionConfig
from concierge.errors import InvalidParameter, MissingParameter
from concierge.formats import EXTENSIONS, FORMATS, render, write_output
from concierge.invoice import Credentials, InvoicePipeline
from concierge.router import HandlerReply
from concierge.sessions import Session, SessionMode, SessionStore
from concierge.transcription import (
    MAX_AUDIO_BYTES,
    SUPPORTED_EXTENSIONS,
    TranscriptionOptions,
    TranscriptionService,
    validate_audio_metadata,
)

if TYPE_CHECKING:
    from concierge.bot import Attachment

__all__ = ["HandlerReply", "InvoiceHandler", "TranscribeHandler"]

logger = logging.getLogger(__name__)

INVOICE_USAGE = "/getInvoice username:<user> password:<pass>"
TRANSCRIBE_USAGE = (
    "/transcribe [format:text|json|srt|vtt] [language:es|en|auto] "
    "[clean:true|false] [analysis:true|false]"
)

# Longer transcripts are delivered as a .txt file
MAX_INLINE_CHARS = 3000

_LANGUAGE_RE = re.compile(r"^[a-z]{2,3}$")

Fetcher = Callable[["Attachment", Path], Awaitable[Path]]


def _parse_bool(name: str, raw: str | None, default: bool) -> bool:
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in ("true", "yes", "1", "on"):
        return True
    if value in ("false", "no", "0", "off"):
        return False
    raise InvalidParameter(name, raw, "true or false")


class InvoiceHandler:
    """``/getInvoice``: runs the invoice pipeline with download requested."""

    verb = "getInvoice"
    usage = INVOICE_USAGE

    def __init__(self, pipeline: InvoicePipeline):
        self._pipeline = pipeline

    async def __call__(self, conversation_id: str, params: dict[str, str]) -> HandlerReply:
        username = params.get("username") or params.get("user")
        password = params.get("password")
        missing = [name for name, value in (("username", username), ("password", password)) if not value]
        if missing:
            raise MissingParameter(missing, self.usage)

        credentials = Credentials(username=username, password=password)
        logger.info(f"Getting invoice for user: {credentials.masked_username}")

        scratch = Path(tempfile.mkdtemp(prefix="concierge-invoice-"))
        try:
            outcome = await self._pipeline.run(credentials, download=True, destination_dir=scratch)
        except BaseException:
            shutil.rmtree(scratch, ignore_errors=True)
            raise

        record = outcome.record
        summary = (
            f"Invoice ID: {record.factura_id}\n"
            f"Expiration date: {record.expiration_date}\n"
            f"Amount: {record.amount}"
        )
        details = json.dumps(record.model_dump(by_alias=True), indent=2, ensure_ascii=False)

        if outcome.artifact is None:
            shutil.rmtree(scratch, ignore_errors=True)
            return HandlerReply(text=f"📄 Invoice Retrieved:\n{details}")

        return HandlerReply(
            text=f"✅ Invoice PDF sent successfully!\n{summary}",
            artifact=outcome.artifact,
            caption=f"📄 Invoice PDF: {record.factura_id}",
            fallback_text=f"📄 Invoice Retrieved (file send failed):\n{details}",
            scratch_dir=scratch,
        )


class TranscribeHandler:
    """``/transcribe``: arms the conversation, then transcribes the next audio."""

    verb = "transcribe"
    usage = TRANSCRIBE_USAGE

    def __init__(
        self,
        sessions: SessionStore,
        service: TranscriptionService,
        config: TranscriptionConfig | None = None,
    ):
        self._sessions = sessions
        self._service = service
        self.config = config or TranscriptionConfig()

    def parse_options(self, params: dict[str, str]) -> TranscriptionOptions:
        """Validate ``/transcribe`` parameters.

        Raises:
            InvalidParameter: a value outside its allowed set.
        """
        fmt = (params.get("format") or "text").lower()
        if fmt not in FORMATS:
            raise InvalidParameter("format", params["format"], " | ".join(FORMATS))

        language = (params.get("language") or self.config.default_language).lower()
        if language != "auto" and not _LANGUAGE_RE.match(language):
            raise InvalidParameter(
                "language", params.get("language", language), "a language code like 'es' or 'auto'"
            )

        return TranscriptionOptions(
            language=language,
            include_timestamps=fmt in ("srt", "vtt", "json"),
            clean=_parse_bool("clean", params.get("clean"), self.config.clean_transcription),
            analyze=_parse_bool("analysis", params.get("analysis"), self.config.include_analysis),
            output_format=fmt,
        )

    async def __call__(self, conversation_id: str, params: dict[str, str]) -> HandlerReply:
        options = self.parse_options(params)
        await self._sessions.put(conversation_id, SessionMode.AWAITING_AUDIO, params)
        minutes = int(self._sessions.ttl // 60)
        return HandlerReply(
            text=(
                f"🎙️ Send me the audio file to transcribe ({', '.join(SUPPORTED_EXTENSIONS)}; "
                f"max {MAX_AUDIO_BYTES // (1024 * 1024)}MB).\n"
                f"Output: {options.output_format}, language: {options.language}.\n"
                f"Any other message cancels the request; it expires in {minutes} minutes."
            )
        )

    async def process_audio(
        self,
        session: Session,
        attachment: Attachment,
        fetch: Fetcher,
        token: CancelToken | None = None,
    ) -> HandlerReply:
        """Transcribe a consumed session's audio attachment.

        The attachment is checked against format and size limits before it
        is downloaded; the downloaded audio is always removed.
        """
        options = self.parse_options(session.params)
        extension = validate_audio_metadata(attachment.name, attachment.size)

        scratch = Path(tempfile.mkdtemp(prefix="concierge-audio-"))
        audio_path = scratch / f"audio{extension}"
        try:
            await fetch(attachment, audio_path)
            result = await self._service.transcribe(audio_path, options, token)
        except BaseException:
            shutil.rmtree(scratch, ignore_errors=True)
            raise
        finally:
            audio_path.unlink(missing_ok=True)

        header = f"✅ Transcription completed using {result.service}"
        if result.corrections_count is not None:
            header += f" ({result.corrections_count} corrections)"
        if result.analysis is not None:
            header += (
                f"\nDetected: {result.analysis.content_type} in {result.analysis.detected_language}, "
                f"{result.analysis.speaker_count} speaker(s)\nSummary: {result.analysis.summary}"
            )

        text = render(result, "text")
        if options.output_format == "text" and len(text) <= MAX_INLINE_CHARS:
            shutil.rmtree(scratch, ignore_errors=True)
            return HandlerReply(text=f"{header}\n\n{text}")

        artifact = await asyncio.to_thread(
            write_output,
            result,
            options.output_format,
            scratch / f"transcription{EXTENSIONS[options.output_format]}",
        )
        return HandlerReply(
            text=header,
            artifact=artifact,
            caption=f"Transcription ({options.output_format})",
            fallback_text=f"{header}\n\n{text[:MAX_INLINE_CHARS]}",
            scratch_dir=scratch,
        )
