"""Snapshot focus guard.

Generating an accessibility snapshot, and the clicks that usually precede
one, can move keyboard focus as a side effect.  A snapshot taken afterwards
would then report ``[active]`` on the wrong element.  The guard is a small
page-side script that remembers which element *should* hold focus and puts
focus back there when it is cleared.

Lifecycle:

* ``arm`` is called before a focus-mutating command (with ``record=True``,
  so the element the interaction legitimately focuses becomes the one to
  keep) and again at the start of every full-page snapshot (with
  ``record=False``, freezing whatever was recorded so far).
* ``clear`` runs at the end of every full-page snapshot, and by the command
  executor when a focus-mutating command fails.

A successful click does *not* clear the guard: the next snapshot does.  The
guard therefore outlives the command that armed it, which is why its state
lives on the session's ``BrowserManager`` rather than in a context manager.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

logger = logging.getLogger("agent_browser.focus_guard")

ARM_SCRIPT = """(record) => {
  const existing = window.__agentBrowserFocusGuard;
  if (existing) {
    existing.recording = record;
    return;
  }
  const guard = { target: document.activeElement, recording: record };
  guard.onFocusIn = (event) => {
    if (guard.recording) guard.target = event.target;
  };
  document.addEventListener('focusin', guard.onFocusIn, true);
  window.__agentBrowserFocusGuard = guard;
}"""

CLEAR_SCRIPT = """() => {
  const guard = window.__agentBrowserFocusGuard;
  if (!guard) return;
  delete window.__agentBrowserFocusGuard;
  document.removeEventListener('focusin', guard.onFocusIn, true);
  const target = guard.target;
  if (target && target.isConnected && document.activeElement !== target
      && typeof target.focus === 'function') {
    target.focus({ preventScroll: true });
  }
}"""


class FocusGuardState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"


class FocusGuard:
    """Explicit shared state token for the page-level focus guard."""

    def __init__(self) -> None:
        self.state: FocusGuardState = FocusGuardState.IDLE

    @property
    def armed(self) -> bool:
        return self.state is FocusGuardState.ARMED

    async def arm(self, page: Any, record: bool = False) -> None:
        """Install (or refresh) the guard on *page*."""
        await page.evaluate(ARM_SCRIPT, record)
        self.state = FocusGuardState.ARMED

    async def clear(self, page: Any) -> None:
        """Remove the guard from *page*, restoring focus if it was stolen.

        The token returns to idle even when the page call fails, e.g. because
        the page navigated away or was closed.
        """
        try:
            await page.evaluate(CLEAR_SCRIPT)
        finally:
            self.state = FocusGuardState.IDLE

    def reset(self) -> None:
        """Forget the guard without touching the page (session teardown)."""
        if self.armed:
            logger.debug("Dropping armed focus guard on teardown")
        self.state = FocusGuardState.IDLE
