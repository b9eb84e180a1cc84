"""Page environments for the invoice pipeline, backed by Playwright.

Each pipeline run acquires its own isolated browser context from a bounded
``BrowserPool`` and releases it on every exit path:

    async with pool.acquire() as page:
        await page.navigate(url)
        inputs = await page.query_candidates(CandidateKind.INPUT)

Candidate queries tag every returned element with a ``data-concierge-ref``
attribute, so each identifier stays addressable even when the markup has no
DOM id.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from concierge.config import BrowserConfig
from concierge.errors import DownloadTimeout, NavigationFailure
from concierge.resolver import CandidateElement, CandidateKind

logger = logging.getLogger(__name__)

REF_ATTRIBUTE = "data-concierge-ref"
REF_PREFIX = "ref:"

_KIND_SELECTORS = {
    CandidateKind.INPUT: "input:not([type=hidden])",
    CandidateKind.BUTTON: "button, app-button, input[type=submit], [role=button]",
    CandidateKind.ANCHOR: "a",
    CandidateKind.TABLE: "table",
}

_QUERY_SCRIPT = """
({kind, selector, attr}) => {
    const elements = Array.from(document.querySelectorAll(selector));
    return elements.map((el, index) => {
        const ref = `${kind}-${index}`;
        el.setAttribute(attr, ref);
        const text = (el.innerText || el.textContent || el.value || '').trim();
        return {
            ref,
            id: el.id || '',
            text: kind === 'table' ? text : text.slice(0, 500),
            html: el.outerHTML,
        };
    });
}
"""


def ref_selector(identifier: str) -> str:
    """Selector for an identifier produced by ``query_candidates``."""
    if identifier.startswith(REF_PREFIX):
        return f"[{REF_ATTRIBUTE}={json.dumps(identifier[len(REF_PREFIX):])}]"
    return f"[id={json.dumps(identifier)}]"


def text_selector(text: str) -> str:
    """Selector matching an element by its visible text (case-insensitive substring)."""
    return f"text={text.strip()}"


def title_selector(title: str) -> str:
    """Selector matching an element by its title attribute."""
    return f"[title={json.dumps(title)}]"


class PageEnvironment(Protocol):
    """Operations the invoice pipeline needs from one live document."""

    async def navigate(self, url: str) -> None: ...

    async def wait_for_load(self) -> None: ...

    async def query_candidates(self, kind: CandidateKind) -> list[CandidateElement]: ...

    async def fill(self, identifier: str, value: str) -> None: ...

    async def click(self, selector: str) -> None: ...

    async def wait_for_download(
        self, trigger: Callable[[], Awaitable[None]], destination: Path
    ) -> Path: ...

    async def close(self) -> None: ...


class PlaywrightPage:
    """PageEnvironment over one Playwright page in its own browser context."""

    def __init__(self, page: Page, context: BrowserContext, config: BrowserConfig):
        self._page = page
        self._context = context
        self._config = config
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def navigate(self, url: str) -> None:
        try:
            await self._page.goto(url, timeout=self._config.navigation_timeout * 1000)
        except PlaywrightError as e:
            raise NavigationFailure(f"navigation to {url} failed: {e}") from e

    async def wait_for_load(self) -> None:
        try:
            await self._page.wait_for_load_state(
                "domcontentloaded", timeout=self._config.navigation_timeout * 1000
            )
        except PlaywrightError as e:
            raise NavigationFailure(f"page did not finish loading: {e}") from e

    async def query_candidates(self, kind: CandidateKind) -> list[CandidateElement]:
        try:
            rows = await self._page.evaluate(
                _QUERY_SCRIPT,
                {"kind": kind.value, "selector": _KIND_SELECTORS[kind], "attr": REF_ATTRIBUTE},
            )
        except PlaywrightError as e:
            logger.warning(f"Candidate query for {kind.value} failed: {e}")
            return []

        candidates = []
        for row in rows:
            # Inputs keep their DOM id when they have one
            if kind == CandidateKind.INPUT and row["id"]:
                identifier = row["id"]
            else:
                identifier = REF_PREFIX + row["ref"]
            candidates.append(
                CandidateElement(
                    identifier=identifier,
                    visible_text=row["text"],
                    raw_markup=row["html"],
                    kind=kind,
                )
            )
        return candidates

    async def fill(self, identifier: str, value: str) -> None:
        selector = ref_selector(identifier)
        try:
            await self._page.wait_for_selector(selector, timeout=self._config.step_timeout * 1000)
            await self._page.fill(selector, value, timeout=self._config.step_timeout * 1000)
        except PlaywrightError as e:
            # The value may be a credential: never include it in the error
            raise NavigationFailure(f"could not fill element {identifier}: {type(e).__name__}") from e

    async def click(self, selector: str) -> None:
        try:
            await self._page.click(selector, timeout=self._config.step_timeout * 1000)
        except PlaywrightError as e:
            raise NavigationFailure(f"could not click {selector}: {e}") from e

    async def wait_for_download(
        self, trigger: Callable[[], Awaitable[None]], destination: Path
    ) -> Path:
        """Run ``trigger`` while waiting for the download it starts.

        Succeeds only if both the trigger and the download complete.
        """
        try:
            async with self._page.expect_download(
                timeout=self._config.download_timeout * 1000
            ) as download_info:
                await trigger()
            download = await download_info.value
            destination.parent.mkdir(parents=True, exist_ok=True)
            await download.save_as(str(destination))
        except PlaywrightTimeoutError as e:
            raise DownloadTimeout(f"download did not start within {self._config.download_timeout}s") from e
        except PlaywrightError as e:
            raise DownloadTimeout(f"download failed: {e}") from e
        return destination

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._context.close()
        except PlaywrightError as e:
            logger.warning(f"Error closing browser context: {e}")


class BrowserPool:
    """Bounded pool of isolated browser contexts over one lazily launched browser."""

    def __init__(self, config: BrowserConfig):
        self.config = config
        self._semaphore = asyncio.Semaphore(max(1, config.pool_size))
        self._launch_lock = asyncio.Lock()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._in_use = 0
        self._acquired_total = 0

    async def _ensure_browser(self) -> Browser:
        async with self._launch_lock:
            if self._browser is None or not self._browser.is_connected():
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                logger.info(f"Launching Chromium (headless={self.config.headless})")
                self._browser = await self._playwright.chromium.launch(headless=self.config.headless)
            return self._browser

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[PlaywrightPage]:
        """Acquire an isolated page; it is closed on every exit path."""
        async with self._semaphore:
            browser = await self._ensure_browser()
            context = await browser.new_context(accept_downloads=True)
            page = PlaywrightPage(await context.new_page(), context, self.config)
            self._in_use += 1
            self._acquired_total += 1
            try:
                yield page
            finally:
                self._in_use -= 1
                await page.close()

    async def close(self) -> None:
        """Shut down the browser and Playwright driver."""
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.warning(f"Error closing browser: {e}")
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
            logger.info("Browser pool closed")

    def get_stats(self) -> dict:
        return {
            "pool_size": self.config.pool_size,
            "in_use": self._in_use,
            "acquired_total": self._acquired_total,
            "browser_running": self._browser is not None,
        }
