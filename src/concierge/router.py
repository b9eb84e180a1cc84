"""Command router: ``/verb key:value key:value`` -> registered handler."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from concierge.errors import UnknownCommand

logger = logging.getLogger(__name__)

WELCOME_HEADER = (
    "Welcome! Send me a command in this format:\n"
    "/taskName param1:value1 param2:value2"
)


@dataclass
class ParsedCommand:
    command: str
    params: dict[str, str] = field(default_factory=dict)


@dataclass
class HandlerReply:
    """What a handler wants delivered back to the conversation."""
    text: str
    artifact: Path | None = None
    caption: str | None = None
    fallback_text: str | None = None  # Sent instead of text if the artifact cannot be delivered
    scratch_dir: Path | None = None  # Removed once the reply has been delivered


Handler = Callable[[str, dict[str, str]], Awaitable[HandlerReply]]


def is_command(text: str) -> bool:
    return text.strip().startswith("/")


def parse_command(text: str) -> ParsedCommand:
    """Split ``/verb k:v k:v`` into the verb and its parameters.

    Values are split on the first colon only, so ``url:https://x`` keeps its
    scheme. Tokens without a colon are ignored.

    >>> parse_command("/getInvoice username:alice password:p:w")
    ParsedCommand(command='getInvoice', params={'username': 'alice', 'password': 'p:w'})
    """
    parts = text.strip().split()
    if not parts:
        return ParsedCommand(command="")
    command = parts[0].lstrip("/")
    params = {}
    for token in parts[1:]:
        key, sep, value = token.partition(":")
        if sep:
            params[key] = value
    return ParsedCommand(command=command, params=params)


@dataclass
class _Route:
    verb: str
    handler: Handler
    usage: str


class CommandRouter:
    """Dispatches command text to the handler registered for its verb."""

    def __init__(self):
        self._routes: dict[str, _Route] = {}
        self._dispatch_count: dict[str, int] = {}

    def register(self, verb: str, handler: Handler, usage: str = "") -> None:
        self._routes[verb] = _Route(verb=verb, handler=handler, usage=usage or f"/{verb}")
        logger.debug(f"Registered command /{verb}")

    @property
    def verbs(self) -> list[str]:
        return list(self._routes)

    def lookup(self, verb: str) -> _Route | None:
        """Exact match first, then case-insensitive."""
        route = self._routes.get(verb)
        if route is not None:
            return route
        lowered = verb.lower()
        for name, candidate in self._routes.items():
            if name.lower() == lowered:
                return candidate
        return None

    def help_text(self) -> str:
        lines = ["Available tasks:"]
        lines.extend(f"• {route.usage}" for route in self._routes.values())
        return "\n".join(lines)

    def welcome_text(self) -> str:
        return f"{WELCOME_HEADER}\n\n{self.help_text()}"

    async def dispatch(self, conversation_id: str, text: str) -> HandlerReply:
        """Route one message.

        Non-command text gets the welcome text.

        Raises:
            UnknownCommand: no handler for the verb.
            ConciergeError: whatever the handler raises.
        """
        if not is_command(text):
            return HandlerReply(text=self.welcome_text())

        parsed = parse_command(text)
        route = self.lookup(parsed.command)
        if route is None:
            logger.info(f"Unknown command: {parsed.command}")
            raise UnknownCommand(parsed.command, self.help_text())

        logger.info(f"Dispatching /{route.verb} with params {sorted(parsed.params)}")
        self._dispatch_count[route.verb] = self._dispatch_count.get(route.verb, 0) + 1
        return await route.handler(conversation_id, parsed.params)

    def get_stats(self) -> dict:
        return {"routes": self.verbs, "dispatched": dict(self._dispatch_count)}
