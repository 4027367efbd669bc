"""Sandboxed rendering of code bundles.

Renders HTML/CSS/JS with headless Chromium through Playwright. Every render
gets a brand-new browser context (own JS globals, storage and cookies), so
nothing leaks between the candidate and expected renders or across
submissions. Browser processes are shared through RenderContextPool, whose
semaphore caps how many contexts are open at once.
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from config import settings

from .document import INSTRUMENTATION_ATTRIBUTES, SERIALIZE_DOM_JS, SKIPPED_TAGS, build_document
from .errors import PoolExhausted, RenderCrash, RenderTimeout
from .models import CodeBundle, PixelBuffer, RenderArtifact, RenderError, SerializedNode

logger = logging.getLogger(__name__)

_EXTERNAL_URL = re.compile(r"^(https?|wss?)://")
_CONTEXT_CLOSE_TIMEOUT_SEC = 5.0


@dataclass
class RenderOptions:
    """Options for a render."""
    width: int = 960
    height: int = 960
    device_scale_factor: float = 1.0
    settle_delay_ms: int = 250  # milliseconds to wait after load for late DOM mutations
    block_external_requests: bool = True

    @classmethod
    def from_settings(cls) -> "RenderOptions":
        return cls(
            width=settings.viewport_width,
            height=settings.viewport_height,
            settle_delay_ms=settings.settle_delay_ms,
            block_external_requests=settings.block_external_requests,
        )


class Renderer(Protocol):
    async def render(
        self,
        bundle: CodeBundle,
        timeout_ms: int | None = None,
        label: str = "bundle",
    ) -> RenderArtifact: ...


class RenderContextPool:
    """Bounded pool of isolated browser contexts.

    ``acquire`` blocks until one of ``max_contexts`` slots is free, which is
    the backpressure point for concurrent evaluations. Contexts are created
    per acquisition and always closed before the slot is released.

    When a context will not close, its browser is retired: new acquisitions
    get a fresh browser, and the retired one is closed once the last context
    still using it has been released.
    """

    def __init__(
        self,
        max_contexts: int | None = None,
        acquire_timeout_sec: float | None = None,
    ):
        self.max_contexts = max_contexts or settings.max_concurrent_renders
        self.acquire_timeout_sec = (
            acquire_timeout_sec if acquire_timeout_sec is not None else settings.pool_acquire_timeout_sec
        )
        self._semaphore = asyncio.Semaphore(self.max_contexts)
        self._launch_lock = asyncio.Lock()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._in_use: dict[Browser, int] = {}
        self._retired: set[Browser] = set()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self) -> Browser:
        """Launch the shared browser if it is not running."""
        async with self._launch_lock:
            if self._browser is None or not self._browser.is_connected():
                try:
                    if self._playwright is None:
                        self._playwright = await async_playwright().start()
                    self._browser = await self._playwright.chromium.launch(
                        headless=True,
                        args=["--no-sandbox", "--disable-setuid-sandbox", "--disable-gpu", "--disable-dev-shm-usage"],
                    )
                except PlaywrightError as e:
                    raise RenderCrash(f"Failed to launch browser: {e}") from e
                logger.info("[Render] Launched headless Chromium")
            return self._browser

    async def close(self):
        """Close the browser and stop Playwright."""
        async with self._launch_lock:
            browsers = list(self._retired)
            if self._browser is not None:
                browsers.append(self._browser)
            self._browser = None
            self._retired.clear()
            for browser in browsers:
                await self._close_browser(browser)
            if self._playwright is not None:
                try:
                    await self._playwright.stop()
                except PlaywrightError as e:
                    logger.warning(f"[Render] Playwright stop error: {e}")
                self._playwright = None

    async def _close_browser(self, browser: Browser):
        try:
            await asyncio.wait_for(browser.close(), timeout=_CONTEXT_CLOSE_TIMEOUT_SEC)
        except (asyncio.TimeoutError, PlaywrightError) as e:
            logger.warning(f"[Render] Browser close error: {e!r}")

    async def _retire(self, browser: Browser):
        # A context that would not close may still be running a candidate's
        # script; its browser takes no new contexts from here on.
        async with self._launch_lock:
            if self._browser is browser:
                self._browser = None
            self._retired.add(browser)

    async def _release(self, browser: Browser):
        remaining = self._in_use.get(browser, 1) - 1
        if remaining > 0:
            self._in_use[browser] = remaining
            return
        self._in_use.pop(browser, None)
        if browser in self._retired:
            self._retired.discard(browser)
            logger.info("[Render] Closing retired browser")
            await self._close_browser(browser)

    @asynccontextmanager
    async def acquire(self, options: RenderOptions) -> AsyncIterator[BrowserContext]:
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.acquire_timeout_sec)
        except asyncio.TimeoutError:
            raise PoolExhausted(
                f"No render context available after {self.acquire_timeout_sec:.1f}s "
                f"({self.max_contexts} in use)"
            ) from None

        try:
            browser = await self.start()
            self._in_use[browser] = self._in_use.get(browser, 0) + 1
            try:
                try:
                    context = await browser.new_context(
                        viewport={"width": options.width, "height": options.height},
                        device_scale_factor=options.device_scale_factor,
                        java_script_enabled=True,
                    )
                except PlaywrightError as e:
                    raise RenderCrash(f"Failed to open browser context: {e}") from e

                try:
                    yield context
                finally:
                    try:
                        await asyncio.wait_for(context.close(), timeout=_CONTEXT_CLOSE_TIMEOUT_SEC)
                    except (asyncio.TimeoutError, PlaywrightError) as e:
                        logger.warning(f"[Render] Context did not close cleanly ({e!r}); retiring browser")
                        await self._retire(browser)
            finally:
                await self._release(browser)
        finally:
            self._semaphore.release()


class RenderService:
    """Renders a CodeBundle into a RenderArtifact."""

    def __init__(
        self,
        pool: RenderContextPool | None = None,
        options: RenderOptions | None = None,
    ):
        self.pool = pool or RenderContextPool()
        self.options = options or RenderOptions.from_settings()

    async def __aenter__(self):
        await self.pool.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.pool.close()

    async def render(
        self,
        bundle: CodeBundle,
        timeout_ms: int | None = None,
        label: str = "bundle",
    ) -> RenderArtifact:
        """
        Render a bundle in a fresh browser context.

        Args:
            bundle: Code to render
            timeout_ms: Per-render time limit (defaults to settings.render_timeout_ms)
            label: Name used in logs and errors ("candidate", "expected")

        Returns:
            RenderArtifact with DOM snapshot, screenshot, text content and script errors

        Raises:
            RenderTimeout: the render did not finish in time
            RenderCrash: the browser failed for reasons unrelated to the bundle
            PoolExhausted: no render context became available
        """
        timeout_ms = timeout_ms or settings.render_timeout_ms
        async with self.pool.acquire(self.options) as context:
            try:
                return await asyncio.wait_for(
                    self._render_in_context(context, bundle),
                    timeout=timeout_ms / 1000,
                )
            except (asyncio.TimeoutError, PlaywrightTimeoutError):
                logger.warning(f"[Render] {label} render timed out after {timeout_ms} ms")
                raise RenderTimeout(timeout_ms, label) from None
            except PlaywrightError as e:
                logger.error(f"[Render] {label} render crashed: {e}")
                raise RenderCrash(f"Rendering {label} failed: {e}") from e

    async def _render_in_context(self, context: BrowserContext, bundle: CodeBundle) -> RenderArtifact:
        errors: list[RenderError] = []

        if self.options.block_external_requests:
            await context.route(_EXTERNAL_URL, lambda route: route.abort())

        page = await context.new_page()
        page.on("pageerror", lambda exc: errors.append(RenderError(stage="script", message=str(exc))))

        def _on_console(msg):
            # Aborted external requests show up as load failures; those are not script errors.
            if msg.type == "error" and not msg.text.startswith("Failed to load resource"):
                errors.append(RenderError(stage="console", message=msg.text))

        page.on("console", _on_console)

        await page.set_content(build_document(bundle), wait_until="load")
        if self.options.settle_delay_ms:
            await page.wait_for_timeout(self.options.settle_delay_ms)

        snapshot = await page.evaluate(
            SERIALIZE_DOM_JS,
            {"skipped": sorted(SKIPPED_TAGS), "ignored": sorted(INSTRUMENTATION_ATTRIBUTES)},
        )
        screenshot_png = await page.screenshot(type="png", full_page=False, animations="disabled")

        in_page_errors = [
            RenderError(stage=str(e.get("stage", "script")), message=str(e.get("message", "")))
            for e in snapshot.get("errors") or []
        ]
        tree = SerializedNode.from_dict(snapshot["tree"])
        if tree.tag != "body":
            tree = SerializedNode(tag="body", children=[tree])

        return RenderArtifact(
            dom_tree=tree,
            screenshot=PixelBuffer.from_png(screenshot_png),
            text_content=list(snapshot.get("text") or []),
            render_errors=in_page_errors + errors,
            screenshot_png=screenshot_png,
        )
