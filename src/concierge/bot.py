"""Transport-independent message handling.

Every inbound message goes through ``ConciergeBot.handle_message``, which is
serialized per conversation:

    awaiting audio + audio attached  -> consume session, transcribe
    awaiting audio + anything else   -> cancel session, cancellation notice
    session expired                  -> expiry notice, then normal routing
    otherwise                        -> command router

Each failure reaches the user as exactly one message; produced files are
deleted once delivered.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Protocol

from concierge.cancellation import run_with_timeout
from concierge.errors import ConciergeError, SessionExpired
from concierge.router import CommandRouter, HandlerReply
from concierge.sessions import SessionMode, SessionStore
from concierge.transcription import SUPPORTED_EXTENSIONS

if TYPE_CHECKING:
    from concierge.handlers import TranscribeHandler

logger = logging.getLogger(__name__)

CANCELLED_NOTICE = "Transcription request cancelled. Send /transcribe to start again."
GENERIC_FAILURE = "Error: Something went wrong while processing your request."
FILE_SEND_FAILURE = "Error: The file could not be delivered."

_AUDIO_MIMETYPES = ("video/mp4", "video/webm")


@dataclass(frozen=True)
class Attachment:
    """A file attached to an inbound message."""
    name: str
    url: str
    mimetype: str = ""
    size: int | None = None

    @property
    def is_audio(self) -> bool:
        if self.mimetype.startswith("audio/") or self.mimetype in _AUDIO_MIMETYPES:
            return True
        return Path(self.name).suffix.lower() in SUPPORTED_EXTENSIONS


@dataclass(frozen=True)
class InboundMessage:
    conversation_id: str
    text: str = ""
    attachments: tuple[Attachment, ...] = field(default_factory=tuple)

    @property
    def audio(self) -> Attachment | None:
        return next((a for a in self.attachments if a.is_audio), None)


class ChatTransport(Protocol):
    """What the bot needs from a chat platform."""

    async def send_message(self, conversation_id: str, text: str) -> None: ...

    async def send_file(self, conversation_id: str, path: Path, caption: str | None = None) -> None: ...

    async def download_attachment(self, attachment: Attachment, destination: Path) -> Path: ...


class ConciergeBot:
    """Routes inbound messages to the session state machine or the command router."""

    def __init__(
        self,
        transport: ChatTransport,
        router: CommandRouter,
        sessions: SessionStore,
        transcriber: TranscribeHandler,
        operation_timeout: float | None = 600.0,
        sweep_interval: float = 30.0,
    ):
        self.transport = transport
        self.router = router
        self.sessions = sessions
        self.transcriber = transcriber
        self.operation_timeout = operation_timeout
        self.sweep_interval = sweep_interval
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._handled = 0
        self._failed = 0

    async def start(self) -> None:
        self.sessions.start_sweeper(self.sweep_interval)

    async def stop(self) -> None:
        await self.sessions.stop_sweeper()

    async def handle_message(self, message: InboundMessage) -> None:
        conversation_id = message.conversation_id
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._lock_users[conversation_id] = self._lock_users.get(conversation_id, 0) + 1
        try:
            async with lock:
                self._handled += 1
                await self._handle(message)
        finally:
            # Drop the lock once no other message of the conversation holds or awaits it
            self._lock_users[conversation_id] -= 1
            if not self._lock_users[conversation_id]:
                del self._lock_users[conversation_id]
                del self._locks[conversation_id]

    async def _handle(self, message: InboundMessage) -> None:
        conversation_id = message.conversation_id

        try:
            session = await self.sessions.get(conversation_id)
        except SessionExpired as e:
            await self._notify(conversation_id, e.user_message)
            session = None

        if session is not None and session.mode == SessionMode.AWAITING_AUDIO:
            audio = message.audio
            if audio is None:
                await self.sessions.cancel(conversation_id)
                await self._notify(conversation_id, CANCELLED_NOTICE)
                return

            try:
                consumed = await self.sessions.consume(conversation_id, SessionMode.AWAITING_AUDIO)
            except SessionExpired as e:
                await self._notify(conversation_id, e.user_message)
                consumed = None

            if consumed is not None:
                logger.info(f"Audio received for {conversation_id}: {audio.name}")
                await self._run(
                    conversation_id,
                    self.transcriber.process_audio(consumed, audio, self.transport.download_attachment),
                )
                return

        await self._run(conversation_id, self.router.dispatch(conversation_id, message.text))

    async def _run(self, conversation_id: str, work: Awaitable[HandlerReply]) -> None:
        try:
            reply = await run_with_timeout(work, self.operation_timeout, what="message handling")
        except ConciergeError as e:
            self._failed += 1
            logger.warning(f"Request in {conversation_id} failed: {e}")
            await self._notify(conversation_id, e.user_message)
            return
        except Exception:
            self._failed += 1
            logger.exception(f"Unexpected error handling message in {conversation_id}")
            await self._notify(conversation_id, GENERIC_FAILURE)
            return

        await self._deliver(conversation_id, reply)

    async def _deliver(self, conversation_id: str, reply: HandlerReply) -> None:
        try:
            if reply.artifact is not None:
                try:
                    await self.transport.send_file(conversation_id, reply.artifact, reply.caption)
                except Exception as e:
                    logger.error(f"Error sending file {reply.artifact.name}: {e}")
                    await self._notify(conversation_id, reply.fallback_text or FILE_SEND_FAILURE)
                    return
                logger.info(f"File sent: {reply.artifact.name}")
            await self._notify(conversation_id, reply.text)
        finally:
            self._discard(reply)

    @staticmethod
    def _discard(reply: HandlerReply) -> None:
        if reply.artifact is not None:
            reply.artifact.unlink(missing_ok=True)
        if reply.scratch_dir is not None:
            shutil.rmtree(reply.scratch_dir, ignore_errors=True)

    async def _notify(self, conversation_id: str, text: str) -> None:
        try:
            await self.transport.send_message(conversation_id, text)
        except Exception as e:
            logger.error(f"Failed to send message to {conversation_id}: {e}")

    def get_stats(self) -> dict[str, Any]:
        return {
            "handled": self._handled,
            "failed": self._failed,
            "active_conversations": len(self._locks),
            "sessions": self.sessions.get_stats(),
            "router": self.router.get_stats(),
        }
