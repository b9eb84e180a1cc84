"""Concierge daemon: wires the services together and serves the Slack bot."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass

from concierge.bot import ConciergeBot
from concierge.classifier import GroqClassifier
from concierge.config import ConciergeConfig, ensure_concierge_home
from concierge.fallback import FallbackChain
from concierge.handlers import InvoiceHandler, TranscribeHandler
from concierge.invoice import InvoicePipeline
from concierge.page import BrowserPool
from concierge.postprocess import PostProcessor
from concierge.resolver import TargetResolver
from concierge.router import CommandRouter
from concierge.sessions import SessionStore
from concierge.transcription import TranscriptionService, build_backends

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything one process needs, built once from config."""
    config: ConciergeConfig
    classifier: GroqClassifier
    resolver: TargetResolver
    pool: BrowserPool
    pipeline: InvoicePipeline
    transcription: TranscriptionService
    sessions: SessionStore
    router: CommandRouter
    transcribe_handler: TranscribeHandler

    async def close(self) -> None:
        await self.pool.close()


def build_services(config: ConciergeConfig) -> Services:
    classifier = GroqClassifier(config.classifier)
    resolver = TargetResolver(classifier)
    pool = BrowserPool(config.browser)
    pipeline = InvoicePipeline(pool, resolver, config.browser, config.invoice)

    backends = build_backends(config.transcription)
    if not backends:
        logger.warning("No transcription backend is configured")
    transcription = TranscriptionService(
        backends,
        FallbackChain(default_timeout=config.transcription.backend_timeout),
        PostProcessor(classifier),
    )

    sessions = SessionStore(ttl=config.sessions.ttl_seconds)
    invoice_handler = InvoiceHandler(pipeline)
    transcribe_handler = TranscribeHandler(sessions, transcription, config.transcription)

    router = CommandRouter()
    router.register(InvoiceHandler.verb, invoice_handler, InvoiceHandler.usage)
    router.register(TranscribeHandler.verb, transcribe_handler, TranscribeHandler.usage)

    return Services(
        config=config,
        classifier=classifier,
        resolver=resolver,
        pool=pool,
        pipeline=pipeline,
        transcription=transcription,
        sessions=sessions,
        router=router,
        transcribe_handler=transcribe_handler,
    )


class ConciergeDaemon:
    """Long-running process: Slack bot + session sweeper."""

    def __init__(self, config: ConciergeConfig | None = None):
        ensure_concierge_home()
        self.config = config or ConciergeConfig.load()
        self.services = build_services(self.config)
        self._slack_bot = None
        self._slack_task: asyncio.Task | None = None
        self._bot: ConciergeBot | None = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start all services and block until stopped."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))

        if not (self.config.slack.enabled and self.config.slack.bot_token):
            raise RuntimeError(
                "Slack is not configured: set CONCIERGE_SLACK_BOT_TOKEN and CONCIERGE_SLACK_APP_TOKEN"
            )

        from concierge.slack_bot import ConciergeSlackBot

        self._slack_bot = ConciergeSlackBot(
            bot_token=self.config.slack.bot_token,
            app_token=self.config.slack.app_token,
            commands=tuple(verb.lower() for verb in self.services.router.verbs),
        )
        self._bot = ConciergeBot(
            transport=self._slack_bot,
            router=self.services.router,
            sessions=self.services.sessions,
            transcriber=self.services.transcribe_handler,
            operation_timeout=self.config.sessions.operation_timeout_seconds,
            sweep_interval=self.config.sessions.sweep_interval_seconds,
        )
        self._slack_bot.attach(self._bot)
        await self._bot.start()

        self._slack_task = asyncio.create_task(self._slack_bot.start(), name="concierge-slack-bot")
        self._slack_task.add_done_callback(self._on_slack_task_done)
        logger.info("Concierge daemon started")

        # Block until stop is requested
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Gracefully stop all services."""
        logger.info("Concierge daemon stopping")

        if self._slack_bot:
            try:
                await self._slack_bot.stop()
            except Exception as e:
                logger.exception(f"Slack bot stop error: {e}")
        if self._slack_task:
            self._slack_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._slack_task
            self._slack_task = None

        if self._bot:
            await self._bot.stop()

        try:
            await self.services.close()
        except Exception as e:
            logger.exception(f"Service shutdown error: {e}")

        self._stop_event.set()

    def _on_slack_task_done(self, task: asyncio.Task) -> None:
        """Surface Slack task failures and unexpected exits."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(f"Slack bot task crashed: {exc}")
        else:
            logger.warning("Slack bot task exited unexpectedly")
