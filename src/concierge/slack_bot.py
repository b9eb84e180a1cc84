"""Slack transport for Concierge: Socket Mode, no public URL needed.

Supports:
- Slash commands: /getinvoice, /transcribe (forwarded as command text)
- Direct messages, including audio uploads (file_share)
- Replies as messages and file uploads
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

try:
    from slack_bolt.async_app import AsyncApp
    from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
    from slack_sdk.web.async_client import AsyncWebClient

    HAS_SLACK = True
except ImportError:
    HAS_SLACK = False

from concierge.bot import Attachment, InboundMessage
from concierge.errors import ConciergeError

if TYPE_CHECKING:
    from concierge.bot import ConciergeBot

logger = logging.getLogger(__name__)

DEFAULT_COMMANDS = ("getinvoice", "transcribe")

# Slack message limit is 40,000 chars
MAX_MESSAGE_LENGTH = 35000


def _require_slack():
    if not HAS_SLACK:
        raise ImportError(
            "slack-bolt and slack-sdk are required for the Slack transport. "
            "Install with: pip install slack-bolt slack-sdk"
        )


def attachments_from_event(event: dict) -> tuple[Attachment, ...]:
    """Build attachments from the ``files`` of a Slack message event."""
    attachments = []
    for f in event.get("files") or []:
        url = f.get("url_private_download") or f.get("url_private")
        if not url:
            continue
        attachments.append(
            Attachment(
                name=f.get("name") or f.get("title") or "file",
                url=url,
                mimetype=f.get("mimetype") or "",
                size=f.get("size"),
            )
        )
    return tuple(attachments)


def message_from_event(event: dict) -> InboundMessage | None:
    """Translate a direct-message event; None for events the bot ignores."""
    if event.get("channel_type") != "im":
        return None
    if event.get("bot_id") or event.get("subtype") not in (None, "file_share"):
        return None
    text = (event.get("text") or "").strip()
    attachments = attachments_from_event(event)
    if not text and not attachments:
        return None
    return InboundMessage(conversation_id=event["channel"], text=text, attachments=attachments)


def message_from_command(command: dict) -> InboundMessage:
    """Translate a slash command payload into command text."""
    text = f"{command.get('command', '')} {command.get('text', '')}".strip()
    return InboundMessage(conversation_id=command["channel_id"], text=text)


class ConciergeSlackBot:
    """Slack app in Socket Mode; also the ChatTransport the bot replies through."""

    def __init__(
        self,
        bot_token: str,
        app_token: str,
        commands: tuple[str, ...] = DEFAULT_COMMANDS,
        http_timeout: float = 60.0,
    ):
        _require_slack()
        self._bot_token = bot_token
        self._app_token = app_token
        self._commands = commands
        self._http_timeout = http_timeout

        self._app = AsyncApp(token=bot_token)
        self._handler: AsyncSocketModeHandler | None = None
        self._client = AsyncWebClient(token=bot_token)
        self._bot: ConciergeBot | None = None
        self._tasks: set[asyncio.Task] = set()

        self._register_commands()
        self._register_events()

    def attach(self, bot: ConciergeBot) -> None:
        self._bot = bot

    # --- Inbound ---

    def _dispatch(self, message: InboundMessage) -> None:
        if self._bot is None:
            logger.warning("Slack message received before a bot was attached")
            return
        # Slack expects an ack within 3 seconds; handling runs in the background
        task = asyncio.create_task(self._bot.handle_message(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _register_commands(self):
        for name in self._commands:

            @self._app.command(f"/{name}")
            async def handle_command(ack, command):
                await ack()
                self._dispatch(message_from_command(command))

    def _register_events(self):
        @self._app.event("message")
        async def handle_message(event):
            message = message_from_event(event)
            if message is None:
                return
            logger.info(
                f"Slack message in {message.conversation_id} "
                f"({len(message.attachments)} attachment(s))"
            )
            self._dispatch(message)

    # --- ChatTransport ---

    async def send_message(self, conversation_id: str, text: str) -> None:
        if len(text) > MAX_MESSAGE_LENGTH:
            text = text[:MAX_MESSAGE_LENGTH] + "\n\n... (output truncated)"
        await self._client.chat_postMessage(channel=conversation_id, text=text)

    async def send_file(self, conversation_id: str, path: Path, caption: str | None = None) -> None:
        await self._client.files_upload_v2(
            channel=conversation_id,
            file=str(path),
            filename=path.name,
            initial_comment=caption,
        )

    async def download_attachment(self, attachment: Attachment, destination: Path) -> Path:
        """Download a private Slack file with the bot token."""
        headers = {"Authorization": f"Bearer {self._bot_token}"}
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout, follow_redirects=True) as client:
                response = await client.get(attachment.url, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ConciergeError(
                f"download of {attachment.name} failed: {e}",
                user_message="Error: The file could not be downloaded from Slack.",
            ) from e
        destination.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(destination.write_bytes, response.content)
        logger.info(f"Downloaded {attachment.name} ({len(response.content) / 1024 / 1024:.2f}MB)")
        return destination

    # --- Lifecycle ---

    async def start(self):
        """Start the Slack bot in Socket Mode."""
        self._handler = AsyncSocketModeHandler(self._app, self._app_token)
        await self._handler.start_async()
        logger.info("Slack bot started in Socket Mode")

    async def stop(self):
        """Stop the Slack bot."""
        if self._handler:
            await self._handler.close_async()
            logger.info("Slack bot stopped")
        for task in list(self._tasks):
            task.cancel()
