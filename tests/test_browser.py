"""Tests for agent_browser.browser module."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agent_browser.browser import BrowserManager, BrowserNotLaunchedError
from agent_browser.focus_guard import ARM_SCRIPT, CLEAR_SCRIPT, FocusGuardState
from agent_browser.protocol import LaunchCommand


def launch_command(**fields) -> LaunchCommand:
    return LaunchCommand(id="l", action="launch", **fields)


def fake_playwright(mock_pw_browser, mock_context):
    pw = MagicMock()
    pw.chromium.launch = AsyncMock(return_value=mock_pw_browser)
    pw.chromium.launch_persistent_context = AsyncMock(return_value=mock_context)
    pw.stop = AsyncMock()
    starter = MagicMock()
    starter.start = AsyncMock(return_value=pw)
    return pw, starter


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class TestInitialState:
    def test_not_launched(self):
        manager = BrowserManager()
        assert manager.is_launched() is False
        assert manager.active_page is None
        assert manager.refs == {}
        assert manager.focus_guard.armed is False

    def test_get_page_raises(self):
        with pytest.raises(BrowserNotLaunchedError):
            BrowserManager().get_page()

    def test_active_page(self, browser_manager, mock_page):
        assert browser_manager.is_launched() is True
        assert browser_manager.get_page() is mock_page


# ---------------------------------------------------------------------------
# Launch / close
# ---------------------------------------------------------------------------


class TestLaunch:
    async def test_plain_launch(self, mock_pw_browser, mock_context, mock_page):
        pw, starter = fake_playwright(mock_pw_browser, mock_context)
        manager = BrowserManager()
        with patch("agent_browser.browser.async_playwright", return_value=starter):
            await manager.launch(
                launch_command(userAgent="bot", storageState="/tmp/s.json")
            )

        pw.chromium.launch.assert_awaited_once_with(headless=True)
        mock_pw_browser.new_context.assert_awaited_once_with(
            viewport={"width": 1280, "height": 720},
            ignore_https_errors=False,
            user_agent="bot",
            storage_state="/tmp/s.json",
        )
        assert manager.is_launched() is True
        assert manager.get_page() is mock_page
        mock_context.on.assert_called_once_with("page", manager._on_new_page_sync)

    async def test_extensions_use_persistent_context(
        self, mock_pw_browser, mock_context
    ):
        pw, starter = fake_playwright(mock_pw_browser, mock_context)
        manager = BrowserManager()
        with patch("agent_browser.browser.async_playwright", return_value=starter):
            await manager.launch(
                launch_command(
                    headless=False,
                    extensions=["/ext/a", "/ext/b"],
                    profile="/tmp/profile",
                    proxy={"server": "http://proxy:3128"},
                )
            )

        pw.chromium.launch.assert_not_awaited()
        args, kwargs = pw.chromium.launch_persistent_context.await_args
        assert args == ("/tmp/profile",)
        assert kwargs["headless"] is False
        assert "--disable-extensions-except=/ext/a,/ext/b" in kwargs["args"]
        assert "--load-extension=/ext/a,/ext/b" in kwargs["args"]
        assert kwargs["proxy"] == {"server": "http://proxy:3128"}
        assert manager.browser is manager.context

    async def test_failed_launch_resets_state(self, mock_pw_browser, mock_context):
        pw, starter = fake_playwright(mock_pw_browser, mock_context)
        pw.chromium.launch.side_effect = RuntimeError("Executable doesn't exist")
        manager = BrowserManager()
        with patch("agent_browser.browser.async_playwright", return_value=starter):
            with pytest.raises(RuntimeError):
                await manager.launch(launch_command())
        assert manager.is_launched() is False
        assert manager.playwright is None
        pw.stop.assert_awaited_once()

    async def test_relaunch_closes_first(
        self, browser_manager, mock_pw_browser, mock_context
    ):
        old_browser = browser_manager.browser
        pw, starter = fake_playwright(mock_pw_browser, mock_context)
        with patch("agent_browser.browser.async_playwright", return_value=starter):
            await browser_manager.launch(launch_command())
        old_browser.close.assert_awaited()
        assert browser_manager.is_launched() is True


class TestClose:
    async def test_close_resets_everything(self, browser_manager, mock_page):
        await browser_manager.focus_guard.arm(mock_page)
        browser_manager.refs = {"e1": {"selector": "aria-ref=e1"}}
        playwright = browser_manager.playwright
        await browser_manager.close()

        assert browser_manager.is_launched() is False
        assert browser_manager.pages == []
        assert browser_manager.refs == {}
        assert browser_manager.focus_guard.armed is False
        playwright.stop.assert_awaited_once()

    async def test_close_is_idempotent(self, browser_manager):
        await browser_manager.close()
        await browser_manager.close()
        assert browser_manager.is_launched() is False

    async def test_close_survives_engine_errors(self, browser_manager, mock_context):
        mock_context.close.side_effect = RuntimeError("already closed")
        await browser_manager.close()
        assert browser_manager.is_launched() is False


# ---------------------------------------------------------------------------
# Page tracking and events
# ---------------------------------------------------------------------------


class TestPages:
    def test_popup_becomes_active(self, browser_manager):
        popup = MagicMock()
        browser_manager._on_new_page_sync(popup)
        assert browser_manager.active_page is popup
        assert len(browser_manager.pages) == 2

    def test_closed_page_is_forgotten(self, browser_manager, mock_page):
        popup = MagicMock()
        browser_manager._on_new_page_sync(popup)
        browser_manager._on_page_close(popup)
        assert browser_manager.pages == [mock_page]
        assert browser_manager.active_page is mock_page

    def test_console_and_errors_are_captured(self, browser_manager):
        page = MagicMock()
        browser_manager._setup_page_listeners(page)
        handlers = {call.args[0]: call.args[1] for call in page.on.call_args_list}

        message = MagicMock()
        message.type = "log"
        message.text = "hello"
        handlers["console"](message)
        handlers["pageerror"](Exception("ReferenceError: x is not defined"))

        assert browser_manager.console_messages[0]["text"] == "hello"
        assert browser_manager.console_messages[0]["type"] == "log"
        assert "ReferenceError" in browser_manager.page_errors[0]["message"]


# ---------------------------------------------------------------------------
# Ref resolution
# ---------------------------------------------------------------------------


class TestResolveSelector:
    @pytest.fixture
    def manager(self, browser_manager):
        browser_manager.refs = {
            "e3": {"selector": "aria-ref=e3", "role": "button", "name": "Go"}
        }
        return browser_manager

    @pytest.mark.parametrize("selector", ["@e3", "ref=e3", "e3"])
    def test_ref_forms(self, manager, selector):
        assert manager.resolve_selector(selector) == "aria-ref=e3"

    def test_css_passes_through(self, manager):
        assert manager.resolve_selector("#main > button") == "#main > button"

    def test_unknown_prefixed_ref_raises(self, manager):
        with pytest.raises(ValueError, match="e9"):
            manager.resolve_selector("@e9")

    def test_unknown_bare_ref_is_a_selector(self, manager):
        assert manager.resolve_selector("e9") == "e9"

    def test_get_locator(self, manager, mock_page):
        manager.get_locator("@e3")
        mock_page.locator.assert_called_once_with("aria-ref=e3")


# ---------------------------------------------------------------------------
# Snapshot and focus guard
# ---------------------------------------------------------------------------


class TestSnapshotIntegration:
    async def test_full_snapshot_replaces_refs(self, browser_manager):
        browser_manager.refs = {"e99": {"selector": "aria-ref=e99"}}
        snapshot = await browser_manager.get_snapshot()
        assert set(browser_manager.refs) == {"e1", "e2", "e3"}
        assert snapshot.refs is browser_manager.refs

    async def test_scoped_snapshot_keeps_refs(self, browser_manager, mock_page):
        browser_manager.refs = {"e1": {"selector": "aria-ref=e1"}}
        await browser_manager.get_snapshot(selector="@e1")
        assert browser_manager.refs == {"e1": {"selector": "aria-ref=e1"}}
        mock_page.locator.assert_called_once_with("aria-ref=e1")
        mock_page.evaluate.assert_not_awaited()

    async def test_arm_then_snapshot_clears(self, browser_manager, mock_page):
        await browser_manager.arm_snapshot_focus_guard()
        mock_page.evaluate.assert_awaited_once_with(ARM_SCRIPT, True)
        assert browser_manager.focus_guard.armed is True

        await browser_manager.get_snapshot()
        mock_page.evaluate.assert_awaited_with(CLEAR_SCRIPT)
        assert browser_manager.focus_guard.armed is False

    async def test_clear_without_page_just_resets(self):
        manager = BrowserManager()
        manager.focus_guard.state = FocusGuardState.ARMED
        await manager.clear_snapshot_focus_guard()
        assert manager.focus_guard.armed is False


class TestScreenshotJpeg:
    async def test_returns_bytes(self, browser_manager, mock_page):
        mock_page.screenshot.return_value = b"jpeg"
        assert await browser_manager.screenshot_jpeg() == b"jpeg"
        mock_page.screenshot.assert_awaited_once_with(type="jpeg", quality=70)

    async def test_errors_become_none(self, browser_manager, mock_page):
        mock_page.screenshot.side_effect = RuntimeError("page crashed")
        assert await browser_manager.screenshot_jpeg() is None

    async def test_no_page(self):
        assert await BrowserManager().screenshot_jpeg() is None
