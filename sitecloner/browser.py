"""Browser session used by the capture driver.

The driver only needs a handful of operations, so the Playwright details
live here behind :class:`Session`. Tests drive the capture logic with a
fake session instead of a real browser.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from .errors import CaptureFailure

logger = logging.getLogger(__name__)

WAIT_UNTIL_CHOICES = ("load", "domcontentloaded", "networkidle0", "networkidle2")

# networkidle2 has no Playwright equivalent; it is emulated after "load"
PLAYWRIGHT_WAIT_UNTIL = {
    "load": "load",
    "domcontentloaded": "domcontentloaded",
    "networkidle0": "networkidle",
    "networkidle2": "load",
}

IDLE_WINDOW_MS = 500
IDLE_MAX_INFLIGHT = 2

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-zygote",
]

SKIP_PATTERNS = [
    "google-analytics.com",
    "googletagmanager.com",
    "analytics.",
    "tracker.",
    "tracking.",
    "adservice.",
    "pagead",
    "doubleclick.net",
]

FETCH_BODY_SCRIPT = """async url => {
    try {
        const r = await fetch(url);
        const b = await r.arrayBuffer();
        return Array.from(new Uint8Array(b));
    } catch(e){ return null; }
}"""


class Session:
    """One browser + one page, owned by a single job."""

    async def navigate(self, url: str, wait_until: str, timeout_ms: int) -> str:
        """Load url and wait for the load condition. Returns the final URL."""
        raise NotImplementedError

    def on_response(self, callback: Callable) -> None:
        """Register a synchronous callback invoked for every network response."""
        raise NotImplementedError

    async def current_document(self) -> bytes:
        """Serialization of the rendered DOM, UTF-8 encoded."""
        raise NotImplementedError

    async def fetch_body(self, url: str) -> Optional[bytes]:
        return None

    async def auto_scroll(self) -> None:
        return None

    async def close(self) -> None:
        raise NotImplementedError


async def block_tracking_requests(route, request):
    """Abort analytics/ad requests, continue everything else"""
    url = request.url
    for pattern in SKIP_PATTERNS:
        if pattern in url:
            logger.debug(f"🚫 Skip: {url}")
            await route.abort()
            return
    await route.continue_()


class PlaywrightSession(Session):
    def __init__(self, browser, page):
        self.browser = browser
        self.page = page
        self._inflight = set()
        self._closed = False
        page.on("request", self._inflight.add)
        page.on("requestfinished", self._inflight.discard)
        page.on("requestfailed", self._inflight.discard)

    async def navigate(self, url: str, wait_until: str, timeout_ms: int) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        try:
            response = await self.page.goto(
                url, wait_until=PLAYWRIGHT_WAIT_UNTIL[wait_until], timeout=timeout_ms
            )
        except PlaywrightTimeoutError:
            raise CaptureFailure(f"Navigation timeout of {timeout_ms} ms exceeded: {url}")
        except PlaywrightError as e:
            raise CaptureFailure(f"Navigation failed for {url}: {e.message}")

        if response is not None and response.status >= 400:
            logger.warning(f"⚠️ {url} answered HTTP {response.status}")

        if wait_until == "networkidle2":
            await self._wait_for_network_idle(url, deadline)
        return self.page.url

    async def _wait_for_network_idle(self, url: str, deadline: float) -> None:
        """At most IDLE_MAX_INFLIGHT open requests for IDLE_WINDOW_MS."""
        loop = asyncio.get_running_loop()
        quiet_since = None
        while True:
            now = loop.time()
            if len(self._inflight) <= IDLE_MAX_INFLIGHT:
                if quiet_since is None:
                    quiet_since = now
                if (now - quiet_since) * 1000 >= IDLE_WINDOW_MS:
                    return
            else:
                quiet_since = None
            if now >= deadline:
                raise CaptureFailure(f"Timed out waiting for network idle: {url}")
            await asyncio.sleep(0.05)

    def on_response(self, callback: Callable) -> None:
        self.page.on("response", callback)

    async def current_document(self) -> bytes:
        try:
            html = await self.page.content()
        except PlaywrightError as e:
            raise CaptureFailure(f"Could not serialize document: {e.message}")
        return html.encode("utf-8")

    async def fetch_body(self, url: str) -> Optional[bytes]:
        """Fallback fetch from inside the page if response.body() fails"""
        try:
            data = await self.page.evaluate(FETCH_BODY_SCRIPT, url)
        except PlaywrightError as e:
            logger.debug(f"Fallback fetch failed for {url}: {e.message}")
            return None
        if data:
            return bytes(data)
        return None

    async def auto_scroll(self, delay=0.25, max_scrolls=20) -> None:
        """Scroll down step by step so lazy-loaded content is requested"""
        try:
            for _ in range(max_scrolls):
                at_bottom = await self.page.evaluate(
                    "() => { window.scrollBy(0, window.innerHeight);"
                    " return window.innerHeight + window.scrollY >= document.body.scrollHeight; }"
                )
                await asyncio.sleep(delay)
                if at_bottom:
                    break
            await self.page.evaluate("window.scrollTo(0, 0);")
        except PlaywrightError as e:
            logger.warning(f"⚠️ Auto scroll stopped: {e.message}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.browser.close()


async def _open_page(browser, block_trackers: bool) -> PlaywrightSession:
    try:
        context = await browser.new_context(
            locale="en-US",
            user_agent=USER_AGENT,
            viewport={"width": 1366, "height": 768},
            service_workers="block",
        )
        await context.set_extra_http_headers({"Accept-Language": "en-US,en;q=0.9"})
        page = await context.new_page()
        if block_trackers:
            await page.route("**/*", block_tracking_requests)
    except PlaywrightError as e:
        raise CaptureFailure(f"Browser setup failed: {e.message}")
    return PlaywrightSession(browser, page)


@asynccontextmanager
async def launch_session(single_process: bool = False, block_trackers: bool = False) -> AsyncIterator[Session]:
    """Launch a headless Chromium with a throwaway profile.

    The browser is closed when the block exits, whatever the outcome.
    """
    args = list(LAUNCH_ARGS)
    if single_process:
        args.append("--single-process")

    async with async_playwright() as pw:
        try:
            browser = await pw.chromium.launch(headless=True, args=args)
        except PlaywrightError as e:
            raise CaptureFailure(f"Browser launch failed: {e.message}")

        session = None
        try:
            session = await _open_page(browser, block_trackers)
            yield session
        finally:
            if session is not None:
                await session.close()
            else:
                await browser.close()
