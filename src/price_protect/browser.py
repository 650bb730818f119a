"""Shared headless browser with per-task isolated pages."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeout
from playwright.sync_api import sync_playwright

from price_protect.errors import SourceUnavailable

if TYPE_CHECKING:
    from collections.abc import Iterator

    from playwright.sync_api import Browser, Page, Playwright

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class SharedBrowser:
    """A lazily launched Chromium instance shared by monitor and filer.

    Playwright's sync objects are bound to the thread that created them,
    so all pages must be opened from the same thread.
    """

    def __init__(self, *, headless: bool = True, timeout_seconds: float = 30.0) -> None:
        self.headless = headless
        self.timeout_ms = int(timeout_seconds * 1000)
        self._lock = threading.Lock()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None

    def _ensure_started(self) -> Browser:
        with self._lock:
            if self._browser is None or not self._browser.is_connected():
                if self._playwright is None:
                    self._playwright = sync_playwright().start()
                logger.info("Launching headless Chromium (headless=%s)", self.headless)
                self._browser = self._playwright.chromium.launch(headless=self.headless)
            return self._browser

    @contextmanager
    def page(self) -> Iterator[Page]:
        """Open an isolated context and page, closing both on exit."""
        browser = self._ensure_started()
        context = browser.new_context(
            user_agent=USER_AGENT, viewport={"width": 1280, "height": 1800}
        )
        context.set_default_timeout(self.timeout_ms)
        try:
            yield context.new_page()
        finally:
            context.close()

    def goto(self, page: Page, url: str) -> None:
        """Navigate, mapping timeouts and network errors to SourceUnavailable."""
        try:
            page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)
        except PlaywrightTimeout as exc:
            msg = f"Timed out loading {url}"
            raise SourceUnavailable(msg) from exc
        except PlaywrightError as exc:
            msg = f"Could not load {url}: {exc}"
            raise SourceUnavailable(msg) from exc

    def close(self) -> None:
        with self._lock:
            if self._browser is not None:
                self._browser.close()
                self._browser = None
            if self._playwright is not None:
                self._playwright.stop()
                self._playwright = None
        logger.info("Headless browser shut down")
