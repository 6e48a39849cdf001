"""Shared fixtures for agent-browser tests."""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_browser.browser import BrowserManager
from agent_browser.config import DaemonSettings

_ENV_VARS = (
    "AGENT_BROWSER_SESSION",
    "AGENT_BROWSER_SOCKET_DIR",
    "AGENT_BROWSER_STREAM_PORT",
    "AGENT_BROWSER_EXTENSIONS",
    "AGENT_BROWSER_ARGS",
    "AGENT_BROWSER_PROXY",
    "AGENT_BROWSER_PROXY_BYPASS",
    "AGENT_BROWSER_IGNORE_HTTPS_ERRORS",
    "AGENT_BROWSER_HEADED",
    "AGENT_BROWSER_EXECUTABLE_PATH",
    "AGENT_BROWSER_PROFILE",
    "AGENT_BROWSER_STATE",
    "AGENT_BROWSER_USER_AGENT",
    "AGENT_BROWSER_DAEMON",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's AGENT_BROWSER_* variables out of every test."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def socket_dir(monkeypatch):
    """Point AGENT_BROWSER_SOCKET_DIR at a fresh, short directory.

    ``tmp_path`` can exceed the ~104 byte limit on Unix socket paths, so a
    directory directly under the system temp dir is used instead.
    """
    path = Path(tempfile.mkdtemp(prefix="ab-"))
    monkeypatch.setenv("AGENT_BROWSER_SOCKET_DIR", str(path))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def settings(socket_dir):
    """Default daemon settings for the ``test`` session."""
    return DaemonSettings(session="test")


@pytest.fixture
def mock_locator():
    """A MagicMock standing in for a Playwright Locator."""
    locator = MagicMock()
    locator.click = AsyncMock()
    locator.dblclick = AsyncMock()
    locator.fill = AsyncMock()
    locator.press_sequentially = AsyncMock()
    locator.press = AsyncMock()
    locator.hover = AsyncMock()
    locator.focus = AsyncMock()
    locator.check = AsyncMock()
    locator.uncheck = AsyncMock()
    locator.select_option = AsyncMock(return_value=["red"])
    locator.scroll_into_view_if_needed = AsyncMock()
    locator.inner_text = AsyncMock(return_value="Hello")
    locator.inner_html = AsyncMock(return_value="<b>Hello</b>")
    locator.get_attribute = AsyncMock(return_value="/home")
    locator.is_visible = AsyncMock(return_value=True)
    locator.count = AsyncMock(return_value=3)
    locator.wait_for = AsyncMock()
    locator.screenshot = AsyncMock(return_value=b"png-bytes")
    locator.aria_snapshot = AsyncMock(return_value='- heading "Test Page" [level=1]')
    locator.nth = MagicMock(return_value=locator)
    locator.last = locator
    return locator


@pytest.fixture
def mock_page(mock_locator):
    """A MagicMock standing in for a Playwright Page."""
    page = MagicMock()
    page.url = "https://example.com"
    page.title = AsyncMock(return_value="Example")
    page.goto = AsyncMock()
    page.go_back = AsyncMock()
    page.go_forward = AsyncMock()
    page.reload = AsyncMock()
    page.content = AsyncMock(return_value="<html></html>")
    page.evaluate = AsyncMock(return_value=None)
    page.screenshot = AsyncMock(return_value=b"png-bytes")
    page.wait_for_timeout = AsyncMock()
    page.close = AsyncMock()

    page.keyboard = MagicMock()
    page.keyboard.press = AsyncMock()

    page.locator = MagicMock(return_value=mock_locator)
    for finder in (
        "get_by_role",
        "get_by_text",
        "get_by_label",
        "get_by_placeholder",
        "get_by_alt_text",
        "get_by_title",
        "get_by_test_id",
    ):
        setattr(page, finder, MagicMock(return_value=mock_locator))

    # snapshotForAI support
    impl = MagicMock()
    channel = MagicMock()
    channel.send_return_as_dict = AsyncMock(
        return_value={
            "full": (
                '- document [ref=e1]\n'
                '  - heading "Test Page" [level=1] [ref=e2]\n'
                '  - button "Submit" [ref=e3]'
            )
        }
    )
    impl._channel = channel
    page._impl_obj = impl

    return page


@pytest.fixture
def mock_context(mock_page):
    """A MagicMock standing in for a Playwright BrowserContext."""
    ctx = MagicMock()
    ctx.pages = [mock_page]
    ctx.new_page = AsyncMock(return_value=mock_page)
    ctx.close = AsyncMock()
    ctx.on = MagicMock()
    return ctx


@pytest.fixture
def mock_pw_browser(mock_context):
    """A MagicMock standing in for a Playwright Browser."""
    browser = MagicMock()
    browser.new_context = AsyncMock(return_value=mock_context)
    browser.close = AsyncMock()
    return browser


@pytest.fixture
def browser_manager(mock_page, mock_context, mock_pw_browser):
    """A BrowserManager with mocked Playwright objects pre-wired."""
    manager = BrowserManager()
    manager.playwright = MagicMock()
    manager.playwright.stop = AsyncMock()
    manager.browser = mock_pw_browser
    manager.context = mock_context
    manager.pages = [mock_page]
    manager.active_page_index = 0
    return manager


@pytest.fixture
def mock_browser(mock_page, mock_locator):
    """A stand-in for BrowserManager as seen by the command executor."""
    browser = MagicMock()
    browser.is_launched = MagicMock(return_value=True)
    browser.get_page = MagicMock(return_value=mock_page)
    browser.get_locator = MagicMock(return_value=mock_locator)
    browser.arm_snapshot_focus_guard = AsyncMock()
    browser.clear_snapshot_focus_guard = AsyncMock()
    browser.launch = AsyncMock()
    browser.close = AsyncMock()
    browser.console_messages = []
    browser.page_errors = []
    return browser
