import time
from datetime import datetime, timezone
from typing import Optional, Tuple

from playwright.async_api import (
    Browser,
    BrowserContext,
    ElementHandle,
    Page,
    Playwright,
    async_playwright,
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeoutError,
)

from common.contracts import CaptureMetadata, CaptureOptions, WaitPolicy
from common.errors import CaptureError
from common.logger import get_logger
from rabbit.models import Viewport

_BROWSER_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-setuid-sandbox",
    "--disable-extensions",
    "--mute-audio",
]

# ms
_PAGE_LOAD_TIMEOUT_MS = 30_000
_SELECTOR_WAIT_TIMEOUT_MS = 10_000
_SCREENSHOT_TIMEOUT_MS = 20_000


class PlaywrightBrowser:
    """Headless Chromium driven through Playwright.

    The browser process is launched once in ``start``; every capture gets a
    fresh context that is closed afterwards, so concurrent jobs never share
    cookies, viewport or page state.
    """

    def __init__(self, options: Optional[CaptureOptions] = None) -> None:
        self._logger = get_logger(__name__)
        self._options = options or CaptureOptions()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def start(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=True,
            args=_BROWSER_LAUNCH_ARGS,
        )

        self._logger.info("Headless browser launched")

    async def stop(self) -> None:
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

        self._logger.info("Headless browser stopped")

    def _ensure_started(self) -> Browser:
        if self._browser is None:
            raise RuntimeError("PlaywrightBrowser is not running.")
        return self._browser

    async def capture(
            self,
            url: str,
            selector: Optional[str],
            viewport: Viewport,
            wait_policy: WaitPolicy = WaitPolicy.NETWORK_IDLE,
    ) -> Tuple[bytes, CaptureMetadata]:
        browser = self._ensure_started()
        started = time.monotonic()

        context: Optional[BrowserContext] = None
        try:
            context = await self._new_context(browser, viewport)
            page = await context.new_page()
            await self._navigate(page, url, wait_policy)
            await self._prepare(page)

            if selector:
                self._logger.info("Taking element screenshot for %s and %s", url, selector)
                image = await self._screenshot_element(page, selector)
            else:
                self._logger.info("Taking full screenshot for %s", url)
                image = await self._screenshot_full_page(page)

        except PlaywrightTimeoutError as e:
            raise CaptureError(f"Timeout error capturing {url}: {e}") from e
        except PlaywrightError as e:
            raise CaptureError(f"Failed to capture screenshot of {url}: {e}") from e
        finally:
            if context is not None:
                await self._close_context(context)

        metadata = CaptureMetadata(
            url=url,
            viewport=viewport,
            full_page=selector is None,
            selector=selector,
            duration_ms=int((time.monotonic() - started) * 1000),
            size=len(image),
            timestamp=datetime.now(timezone.utc),
        )
        return image, metadata

    async def _close_context(self, context: BrowserContext) -> None:
        try:
            await context.close()
        except PlaywrightError as e:
            # the browser may already be gone
            self._logger.warning("Could not close browser context: %s", e)

    async def _new_context(self, browser: Browser, viewport: Viewport) -> BrowserContext:
        return await browser.new_context(
            viewport={"width": viewport.width, "height": viewport.height},
            user_agent=self._options.user_agent,
            java_script_enabled=True,
            ignore_https_errors=True,
            accept_downloads=False,
        )

    @staticmethod
    async def _navigate(page: Page, url: str, wait_policy: WaitPolicy) -> None:
        page.set_default_timeout(_PAGE_LOAD_TIMEOUT_MS)
        try:
            response = await page.goto(url, wait_until=wait_policy.value)
        except PlaywrightTimeoutError:
            if wait_policy is not WaitPolicy.NETWORK_IDLE:
                raise
            # pages with long-polling never go idle
            response = await page.goto(url, wait_until="domcontentloaded")

        if response is None:
            raise CaptureError(f"No response received from {url}")
        if not response.ok:
            raise CaptureError(f"HTTP {response.status}: {response.status_text} for {url}")

    async def _prepare(self, page: Page) -> None:
        options = self._options
        if options.custom_css:
            await page.add_style_tag(content=options.custom_css)
        if options.hide_elements:
            hide_css = "\n".join(
                f"{s} {{ visibility: hidden !important; }}" for s in options.hide_elements
            )
            await page.add_style_tag(content=hide_css)
        if options.settle_ms > 0:
            await page.wait_for_timeout(options.settle_ms)

        await page.evaluate("window.scrollTo(0, 0)")

    @staticmethod
    async def _screenshot_full_page(page: Page) -> bytes:
        return await page.screenshot(
            full_page=True,
            type="png",
            timeout=_SCREENSHOT_TIMEOUT_MS,
        )

    @staticmethod
    async def _screenshot_element(page: Page, selector: str) -> bytes:
        try:
            element: Optional[ElementHandle] = await page.wait_for_selector(
                selector,
                state="visible",
                timeout=_SELECTOR_WAIT_TIMEOUT_MS,
            )
        except PlaywrightTimeoutError as e:
            raise CaptureError(f"Element not found: '{selector}'") from e

        if element is None:
            raise CaptureError(f"Element not found: '{selector}'")

        await element.scroll_into_view_if_needed()

        return await element.screenshot(
            type="png",
            timeout=_SCREENSHOT_TIMEOUT_MS,
        )

    async def __aenter__(self) -> "PlaywrightBrowser":
        await self.start()
        return self

    async def __aexit__(self, *_) -> None:
        await self.stop()
