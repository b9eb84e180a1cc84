"""Invoice retrieval pipeline: a linear state machine over a page environment.

Init -> Navigate -> ResolveUsernameField -> FillUsername -> ResolvePasswordField
-> FillPassword -> ResolveLoginControl -> SubmitLogin -> AwaitPostLoginLoad
-> ResolveInvoiceLink -> ActivateInvoiceLink -> AwaitRender -> ExtractInvoiceTable
-> ResolveInvoiceRecord -> [ResolveDownloadTrigger -> AwaitDownload
-> PersistArtifact] -> Done

Any state may end in Failed. Missing username/password/login elements are
fatal; a missing invoice link is governed by ``invoice_link_policy``; an
empty table extraction is soft. The page is always closed before the run
returns or raises.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import tempfile
import time
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Protocol, TypeVar

from concierge.cancellation import CancelToken, poll_until, run_with_timeout
from concierge.classifier import ButtonChoice, ElementChoice, InvoiceRecord
from concierge.config import BrowserConfig, InvoiceConfig
from concierge.errors import (
    ConciergeError,
    InvoiceNotFound,
    MissingCredentialField,
    NavigationFailure,
    OperationCancelled,
)
from concierge.page import PageEnvironment, ref_selector, text_selector, title_selector
from concierge.resolver import CandidateElement, CandidateKind, TargetResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")

USERNAME_INSTRUCTION = (
    "Your task is to select ONLY the input where a username or email must be typed "
    "to log in. Return its id."
)
PASSWORD_INSTRUCTION = (
    "Your task is to select ONLY the input where the password must be typed "
    "to log in. Return its id."
)
LOGIN_INSTRUCTION = (
    "These are the buttons of a login page. Your task is to select ONLY the button "
    "that most likely corresponds to the login action (e.g. \"Ingresar\", \"Acceder\", "
    "\"Login\", \"Entrar\"). Return its visible text only."
)
INVOICE_LINK_INSTRUCTION = (
    "These are the links of a customer portal. Your task is to select ONLY the link "
    "that most likely opens the invoices section (e.g. \"Invoice\", \"Facturas\"). "
    "Return its visible text only."
)
INVOICE_RECORD_INSTRUCTION = (
    "These are the tables of the invoices section. Return the most recent invoice: "
    "its expiration date, its amount and its id taken from the 'Factura' column."
)
DOWNLOAD_TRIGGER_INSTRUCTION = (
    "Your task is to select ONLY the element that downloads the PDF of invoice "
    "\"{factura_id}\" (usually a link whose title is the invoice id). Return its id."
)


class PipelineState(Enum):
    """States of the invoice pipeline."""
    INIT = "init"
    NAVIGATE = "navigate"
    RESOLVE_USERNAME_FIELD = "resolve_username_field"
    FILL_USERNAME = "fill_username"
    RESOLVE_PASSWORD_FIELD = "resolve_password_field"
    FILL_PASSWORD = "fill_password"
    RESOLVE_LOGIN_CONTROL = "resolve_login_control"
    SUBMIT_LOGIN = "submit_login"
    AWAIT_POST_LOGIN_LOAD = "await_post_login_load"
    RESOLVE_INVOICE_LINK = "resolve_invoice_link"
    ACTIVATE_INVOICE_LINK = "activate_invoice_link"
    AWAIT_RENDER = "await_render"
    EXTRACT_INVOICE_TABLE = "extract_invoice_table"
    RESOLVE_INVOICE_RECORD = "resolve_invoice_record"
    RESOLVE_DOWNLOAD_TRIGGER = "resolve_download_trigger"
    AWAIT_DOWNLOAD = "await_download"
    PERSIST_ARTIFACT = "persist_artifact"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Credentials:
    """Portal login. Lives only for one pipeline run."""
    username: str
    password: str = field(repr=False)

    @property
    def masked_username(self) -> str:
        if len(self.username) <= 2:
            return "*" * len(self.username)
        return self.username[:2] + "*" * (len(self.username) - 2)


@dataclass
class InvoiceOutcome:
    """Result of a successful pipeline run."""
    record: InvoiceRecord
    artifact: Path | None = None
    trace: list[PipelineState] = field(default_factory=list)
    degraded: bool = False
    duration_ms: float = 0.0


class PagePool(Protocol):
    """Source of isolated page environments."""

    def acquire(self) -> AbstractAsyncContextManager[PageEnvironment]: ...


def _safe_filename(name: str) -> str:
    cleaned = re.sub(r"[^\w.-]", "_", name).strip("._")
    return cleaned or "invoice"


class _PipelineRun:
    """State of one run. Never shared between runs."""

    def __init__(
        self,
        page: PageEnvironment,
        resolver: TargetResolver,
        browser_config: BrowserConfig,
        invoice_config: InvoiceConfig,
        token: CancelToken | None,
    ):
        self.page = page
        self.resolver = resolver
        self.browser_config = browser_config
        self.invoice_config = invoice_config
        self.token = token
        self.state = PipelineState.INIT
        self.trace: list[PipelineState] = [PipelineState.INIT]
        self.degraded = False

    def enter(self, state: PipelineState) -> None:
        if self.token is not None:
            self.token.raise_if_cancelled()
        self.state = state
        self.trace.append(state)
        logger.debug(f"Invoice pipeline -> {state.value}")

    def fail(self) -> None:
        self.state = PipelineState.FAILED
        self.trace.append(PipelineState.FAILED)

    async def page_call(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        return await run_with_timeout(
            awaitable,
            timeout or self.browser_config.step_timeout,
            self.token,
            what=self.state.value,
        )

    async def resolve(self, candidates: list[CandidateElement], instruction: str, schema: Any):
        return await run_with_timeout(
            self.resolver.resolve(candidates, instruction, schema),
            self.invoice_config.resolve_timeout,
            self.token,
            what=self.state.value,
        )

    async def resolve_input(self, state: PipelineState, instruction: str, what: str) -> str:
        """Resolve a mandatory login input; returns its identifier."""
        self.enter(state)
        candidates = await self.page_call(self.page.query_candidates(CandidateKind.INPUT))
        logger.debug(f"Input candidates: {[c.identifier for c in candidates]}")
        resolution = await self.resolve(candidates, instruction, ElementChoice)
        if not resolution.ok:
            raise MissingCredentialField(f"no {what} field resolved ({resolution.failure.value})")
        known = {c.identifier for c in candidates}
        if resolution.value.element_id not in known:
            raise MissingCredentialField(
                f"{what} field '{resolution.value.element_id}' is not on the page"
            )
        logger.info(f"{what.capitalize()} input found: {resolution.value.element_id}")
        return resolution.value.element_id


class InvoicePipeline:
    """Drives login -> invoices section -> invoice record -> optional PDF download."""

    def __init__(
        self,
        pool: PagePool,
        resolver: TargetResolver,
        browser_config: BrowserConfig,
        invoice_config: InvoiceConfig,
    ):
        self._pool = pool
        self._resolver = resolver
        self.browser_config = browser_config
        self.invoice_config = invoice_config

    async def run(
        self,
        credentials: Credentials,
        url: str | None = None,
        download: bool = False,
        destination_dir: Path | None = None,
        token: CancelToken | None = None,
    ) -> InvoiceOutcome:
        """Run the pipeline once with its own page environment.

        Raises:
            NavigationFailure, MissingCredentialField, InvoiceNotFound,
            DownloadTimeout, OperationCancelled: on fatal failures, after the
            page has been closed.
        """
        target_url = url or self.invoice_config.portal_url
        if not target_url:
            raise NavigationFailure("no portal URL configured")

        start = time.monotonic()
        logger.info(f"Invoice pipeline starting for {credentials.masked_username}")

        async with self._pool.acquire() as page:
            run = _PipelineRun(page, self._resolver, self.browser_config, self.invoice_config, token)
            try:
                outcome = await self._execute(run, credentials, target_url, download, destination_dir)
            except ConciergeError as e:
                logger.error(f"Invoice pipeline failed in {run.state.value}: {e}")
                e.failed_state = run.state
                run.fail()
                raise
            except Exception:
                logger.exception(f"Invoice pipeline crashed in {run.state.value}")
                run.fail()
                raise
            finally:
                await page.close()

        outcome.duration_ms = (time.monotonic() - start) * 1000
        logger.info(f"Invoice pipeline done in {outcome.duration_ms:.0f}ms (degraded={outcome.degraded})")
        return outcome

    async def _execute(
        self,
        run: _PipelineRun,
        credentials: Credentials,
        url: str,
        download: bool,
        destination_dir: Path | None,
    ) -> InvoiceOutcome:
        page = run.page

        run.enter(PipelineState.NAVIGATE)
        logger.info("Navigating to portal...")
        await run.page_call(page.navigate(url), self.browser_config.navigation_timeout)
        await run.page_call(page.wait_for_load(), self.browser_config.navigation_timeout)

        # --- Login ---
        username_id = await run.resolve_input(
            PipelineState.RESOLVE_USERNAME_FIELD, USERNAME_INSTRUCTION, "username"
        )
        run.enter(PipelineState.FILL_USERNAME)
        await run.page_call(page.fill(username_id, credentials.username))

        password_id = await run.resolve_input(
            PipelineState.RESOLVE_PASSWORD_FIELD, PASSWORD_INSTRUCTION, "password"
        )
        run.enter(PipelineState.FILL_PASSWORD)
        await run.page_call(page.fill(password_id, credentials.password))

        run.enter(PipelineState.RESOLVE_LOGIN_CONTROL)
        buttons = await run.page_call(page.query_candidates(CandidateKind.BUTTON))
        login = await run.resolve(buttons, LOGIN_INSTRUCTION, ButtonChoice)
        if not login.ok:
            raise MissingCredentialField(f"no login control resolved ({login.failure.value})")
        logger.info(f"Login button chosen: {login.value.button_text}")

        run.enter(PipelineState.SUBMIT_LOGIN)
        await run.page_call(page.click(text_selector(login.value.button_text)))

        run.enter(PipelineState.AWAIT_POST_LOGIN_LOAD)
        await run.page_call(page.wait_for_load(), self.browser_config.navigation_timeout)

        # --- Invoices section ---
        await self._open_invoice_section(run)

        run.enter(PipelineState.AWAIT_RENDER)
        rendered = await poll_until(
            lambda: run.page_call(
                page.query_candidates(CandidateKind.TABLE), self.browser_config.render_timeout
            ),
            timeout=self.browser_config.render_timeout,
            interval=self.browser_config.render_poll_interval,
            backoff=self.browser_config.render_poll_backoff,
            max_interval=self.browser_config.render_poll_max_interval,
            token=run.token,
        )
        if not rendered:
            logger.warning(f"No table rendered within {self.browser_config.render_timeout}s")

        run.enter(PipelineState.EXTRACT_INVOICE_TABLE)
        tables = await self._extract_tables(run)
        logger.debug(f"Extracted {len(tables)} table(s)")

        run.enter(PipelineState.RESOLVE_INVOICE_RECORD)
        resolution = await run.resolve(tables, INVOICE_RECORD_INSTRUCTION, InvoiceRecord)
        if not resolution.ok:
            raise InvoiceNotFound(f"no invoice record resolved ({resolution.failure.value})")
        record = resolution.value
        logger.info(f"Invoice found: {record.factura_id} due {record.expiration_date} ({record.amount})")

        artifact = None
        if download:
            artifact = await self._download(run, record, destination_dir)

        run.enter(PipelineState.DONE)
        return InvoiceOutcome(record=record, artifact=artifact, trace=list(run.trace), degraded=run.degraded)

    async def _open_invoice_section(self, run: _PipelineRun) -> None:
        run.enter(PipelineState.RESOLVE_INVOICE_LINK)
        anchors = await run.page_call(run.page.query_candidates(CandidateKind.ANCHOR))
        abort = self.invoice_config.invoice_link_policy == "abort"
        try:
            link = await run.resolve(anchors, INVOICE_LINK_INSTRUCTION, ButtonChoice)
            reason = None if link.ok else link.failure.value
        except OperationCancelled:
            if run.token is not None and run.token.cancelled:
                raise
            reason = "timed out"

        if reason is not None:
            if abort:
                raise NavigationFailure(f"invoice section link not found ({reason})")
            run.degraded = True
            logger.warning(f"Invoice link not resolved ({reason}), assuming section is visible")
            return

        logger.info(f"Invoice link chosen: {link.value.button_text}")
        run.enter(PipelineState.ACTIVATE_INVOICE_LINK)
        try:
            await run.page_call(run.page.click(text_selector(link.value.button_text)))
        except NavigationFailure as e:
            if abort:
                raise
            run.degraded = True
            logger.warning(f"Invoice link click failed, continuing: {e}")

    async def _extract_tables(self, run: _PipelineRun) -> list[CandidateElement]:
        try:
            return await run.page_call(run.page.query_candidates(CandidateKind.TABLE))
        except OperationCancelled:
            if run.token is not None and run.token.cancelled:
                raise
            logger.warning("Table extraction timed out, continuing with empty extraction")
            return []

    async def _download(
        self,
        run: _PipelineRun,
        record: InvoiceRecord,
        destination_dir: Path | None,
    ) -> Path:
        page = run.page

        run.enter(PipelineState.RESOLVE_DOWNLOAD_TRIGGER)
        candidates = await run.page_call(page.query_candidates(CandidateKind.ANCHOR))
        candidates += await run.page_call(page.query_candidates(CandidateKind.BUTTON))
        choice = await run.resolve(
            candidates,
            DOWNLOAD_TRIGGER_INSTRUCTION.format(factura_id=record.factura_id),
            ElementChoice,
        )
        known = {c.identifier for c in candidates}
        if choice.ok and choice.value.element_id in known:
            selector = ref_selector(choice.value.element_id)
        else:
            # The portal titles each download link with the invoice id
            selector = title_selector(record.factura_id)
            logger.info("Download trigger not resolved, using invoice id title")

        run.enter(PipelineState.AWAIT_DOWNLOAD)
        logger.info(f"Downloading invoice with ID: {record.factura_id}")
        staging_dir = Path(tempfile.mkdtemp(prefix="concierge-dl-"))
        filename = f"{_safe_filename(record.factura_id)}.pdf"
        try:
            staged = await run.page_call(
                page.wait_for_download(lambda: page.click(selector), staging_dir / filename),
                self.browser_config.download_timeout + self.browser_config.step_timeout,
            )

            run.enter(PipelineState.PERSIST_ARTIFACT)
            target_dir = destination_dir or Path(self.invoice_config.download_dir)
            target = target_dir / filename
            await asyncio.to_thread(target_dir.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.move, str(staged), str(target))
        finally:
            await asyncio.to_thread(shutil.rmtree, staging_dir, True)

        logger.info(f"Invoice PDF saved at: {target}")
        return target
