"""Shared fixtures for agent-browser integration tests.

These fixtures launch a real headless Chromium browser via Patchright.
Every test gets a fresh browser instance (function-scoped) for isolation.
"""

from __future__ import annotations

import urllib.parse

import pytest

from agent_browser.browser import BrowserManager
from agent_browser.protocol import LaunchCommand

# ---------------------------------------------------------------------------
# Test HTML page served via data: URL (no external HTTP server needed)
# ---------------------------------------------------------------------------

TEST_HTML = "data:text/html," + urllib.parse.quote(
    """<html><body>
<h1>Test Page</h1>
<p>Some text</p>
<a href="#details" id="link1">Details</a>
<form onsubmit="return false">
  <label for="email">Email</label>
  <input type="text" id="email" placeholder="Enter email">
  <input type="checkbox" id="agree-cb" aria-label="Agree">
  <button type="button" id="submit-btn"
          onclick="document.title = 'clicked'">Submit</button>
</form>
<ul><li>one</li><li>two</li><li>three</li></ul>
</body></html>"""
)


@pytest.fixture
async def browser_real() -> BrowserManager:
    """Launch a real headless browser, yield the BrowserManager, close it."""
    manager = BrowserManager()
    await manager.launch(
        LaunchCommand(id="it", action="launch", args=["--no-sandbox"])
    )
    try:
        yield manager  # type: ignore[misc]
    finally:
        await manager.close()


@pytest.fixture
async def html_page(browser_real: BrowserManager) -> tuple[BrowserManager, object]:
    """Navigate the active page to TEST_HTML."""
    page = browser_real.get_page()
    await page.goto(TEST_HTML)
    return browser_real, page
