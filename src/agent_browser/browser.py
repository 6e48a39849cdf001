"""Browser session state for the agent-browser daemon.

``BrowserManager`` owns the single Patchright session a daemon process keeps
alive between client invocations: the playwright driver, browser, context,
open pages, the ref table produced by the last full-page snapshot, captured
console messages and page errors, and the session's focus guard.
"""

from __future__ import annotations

import asyncio
import logging
import re
import tempfile
import time
from typing import Any

from patchright.async_api import async_playwright

from agent_browser.focus_guard import FocusGuard
from agent_browser.protocol import LaunchCommand
from agent_browser.snapshot import RefInfo, Snapshot, get_enhanced_snapshot

logger = logging.getLogger("agent_browser.browser")

DEFAULT_VIEWPORT = {"width": 1280, "height": 720}

# "@e3", "ref=e3" and a bare "e3" all address snapshot ref e3.
_REF_SELECTOR_RE = re.compile(r"^(?:@|ref=)?(e\d+)$")


class BrowserNotLaunchedError(RuntimeError):
    pass


class BrowserManager:
    """Holds all state for the daemon's browser session."""

    def __init__(self) -> None:
        # Playwright objects
        self.playwright: Any = None
        self.browser: Any = None
        self.context: Any = None
        self.pages: list[Any] = []
        self.active_page_index: int = 0

        # Element reference tracking (replaced by every full-page snapshot)
        self.refs: dict[str, RefInfo] = {}

        # Captured events
        self.console_messages: list[dict[str, Any]] = []
        self.page_errors: list[dict[str, Any]] = []

        self.focus_guard = FocusGuard()
        self._start_time: float = 0.0

    # -- Properties ----------------------------------------------------------

    def is_launched(self) -> bool:
        return self.context is not None

    @property
    def active_page(self) -> Any | None:
        """Return the currently active page, or ``None`` if no pages exist."""
        if self.pages:
            idx = max(0, min(self.active_page_index, len(self.pages) - 1))
            return self.pages[idx]
        return None

    def get_page(self) -> Any:
        """Return the active page, raising if the browser is not running."""
        page = self.active_page
        if page is None:
            raise BrowserNotLaunchedError(
                "Browser not launched. Send 'launch' (or any command) first."
            )
        return page

    # -- Browser lifecycle ---------------------------------------------------

    async def launch(self, command: LaunchCommand) -> None:
        """Launch the browser described by *command*.

        An already running session is closed first, so a daemon never holds
        more than one browser.
        """
        if self.is_launched():
            logger.info("Relaunching: closing the current browser first")
            await self.close()

        self.playwright = await async_playwright().start()
        try:
            await self._launch(command)
        except Exception:
            await self.close()
            raise
        self._start_time = time.time()
        logger.info(
            "Browser launched (%s, headless=%s)", command.browser, command.headless
        )

    async def _launch(self, command: LaunchCommand) -> None:
        browser_type = getattr(self.playwright, command.browser)

        args = list(command.args or [])
        if command.extensions:
            joined = ",".join(command.extensions)
            args.append(f"--disable-extensions-except={joined}")
            args.append(f"--load-extension={joined}")

        launch_opts: dict[str, Any] = {"headless": command.headless}
        if command.executable_path:
            launch_opts["executable_path"] = command.executable_path
        if args:
            launch_opts["args"] = args
        if command.proxy is not None:
            launch_opts["proxy"] = command.proxy.model_dump(exclude_none=True)

        viewport = (
            command.viewport.model_dump() if command.viewport else DEFAULT_VIEWPORT
        )
        context_opts: dict[str, Any] = {
            "viewport": viewport,
            "ignore_https_errors": command.ignore_https_errors,
        }
        if command.user_agent:
            context_opts["user_agent"] = command.user_agent

        if command.profile or command.extensions:
            # Extensions only load into a persistent context.
            user_data = command.profile or tempfile.mkdtemp(prefix="agent-browser-")
            self.context = await browser_type.launch_persistent_context(
                user_data, **launch_opts, **context_opts
            )
            # Persistent context IS the browser
            self.browser = self.context
        else:
            if command.storage_state:
                context_opts["storage_state"] = command.storage_state
            self.browser = await browser_type.launch(**launch_opts)
            self.context = await self.browser.new_context(**context_opts)

        self.context.on("page", self._on_new_page_sync)

        if self.context.pages:
            page = self.context.pages[0]
        else:
            page = await self.context.new_page()
        # _on_new_page_sync may have added it already
        if page not in self.pages:
            self.pages.append(page)
            self._setup_page_listeners(page)
        self.active_page_index = self.pages.index(page)

    async def close(self) -> None:
        """Close the browser and forget all session state.  Idempotent."""
        context, browser = self.context, self.browser
        self.context = None
        self.browser = None
        self.pages = []
        self.active_page_index = 0
        self.refs = {}
        self.focus_guard.reset()
        try:
            if context is not None and context is not browser:
                await context.close()
            if browser is not None:
                await browser.close()
        except Exception:
            logger.warning("Error while closing the browser", exc_info=True)
        await self._stop_playwright()

    async def _stop_playwright(self) -> None:
        playwright, self.playwright = self.playwright, None
        if playwright is None:
            return
        try:
            await playwright.stop()
        except Exception:
            logger.warning("Error while stopping playwright", exc_info=True)

    # -- Page event handlers -------------------------------------------------

    def _on_new_page_sync(self, page: Any) -> None:
        """Track pages opened by the site (popups, target=_blank links)."""
        if page not in self.pages:
            self.pages.append(page)
            self._setup_page_listeners(page)
            self.active_page_index = len(self.pages) - 1

    def _on_page_close(self, page: Any) -> None:
        if page in self.pages:
            self.pages.remove(page)
            self.active_page_index = max(0, len(self.pages) - 1)

    def _setup_page_listeners(self, page: Any) -> None:
        """Attach console, page-error and close listeners to *page*."""

        def _elapsed_ms() -> int:
            if not self._start_time:
                return 0
            return int((time.time() - self._start_time) * 1000)

        def _on_console(msg: Any) -> None:
            self.console_messages.append(
                {"type": msg.type, "text": msg.text, "elapsed_ms": _elapsed_ms()}
            )

        def _on_page_error(error: Any) -> None:
            self.page_errors.append(
                {"message": str(error), "elapsed_ms": _elapsed_ms()}
            )

        page.on("console", _on_console)
        page.on("pageerror", _on_page_error)
        page.on("close", self._on_page_close)

    # -- Ref resolution ------------------------------------------------------

    def resolve_selector(self, selector: str) -> str:
        """Map a ref (``@e3``, ``ref=e3``, ``e3``) to its ``aria-ref`` selector.

        Anything that does not look like a ref is returned unchanged and
        treated as a CSS/Playwright selector.
        """
        match = _REF_SELECTOR_RE.match(selector.strip())
        if not match:
            return selector
        ref = match.group(1)
        entry = self.refs.get(ref)
        if entry is None:
            if selector.startswith("@") or selector.startswith("ref="):
                raise ValueError(
                    f"Element ref '{ref}' not found. Take a new snapshot to get "
                    f"current refs."
                )
            return selector
        return entry["selector"] or f"aria-ref={ref}"

    def get_locator(self, selector: str) -> Any:
        return self.get_page().locator(self.resolve_selector(selector))

    # -- Snapshots and the focus guard --------------------------------------

    async def get_snapshot(
        self,
        selector: str | None = None,
        interactive: bool = False,
        max_depth: int | None = None,
    ) -> Snapshot:
        page = self.get_page()
        snapshot = await get_enhanced_snapshot(
            page,
            self.resolve_selector(selector) if selector else None,
            interactive=interactive,
            max_depth=max_depth,
            focus_guard=self.focus_guard,
        )
        if not selector:
            self.refs = snapshot.refs
        return snapshot

    async def arm_snapshot_focus_guard(self) -> None:
        await self.focus_guard.arm(self.get_page(), record=True)

    async def clear_snapshot_focus_guard(self) -> None:
        page = self.active_page
        if page is None:
            self.focus_guard.reset()
            return
        await self.focus_guard.clear(page)

    # -- Misc ----------------------------------------------------------------

    async def screenshot_jpeg(self, quality: int = 70) -> bytes | None:
        """Grab a JPEG of the active page for the live-preview stream."""
        page = self.active_page
        if page is None:
            return None
        try:
            return await page.screenshot(type="jpeg", quality=quality)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Stream screenshot failed: %s", exc)
            return None
