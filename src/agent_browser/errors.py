"""Failure classification for agent-browser.

Patchright reports most interaction failures as long, multi-line messages
(a headline plus a "Call log").  ``to_ai_friendly_error`` reduces them to a
short, actionable sentence by matching the raw text against ``ERROR_RULES``,
an ordered table of case-insensitive substring rules.  The first rule that
matches wins; text no rule recognises is passed through verbatim.

The substrings are tied to Patchright's wording and may need revising when
the engine changes its messages.  Edit the table, not the callers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable


class ErrorCategory(str, Enum):
    PARSE_ERROR = "parse_error"
    UNKNOWN_ACTION = "unknown_action"
    NOT_FOUND_OR_NOT_VISIBLE = "not_found_or_not_visible"
    NOT_VISIBLE = "not_visible"
    BLOCKED_BY_OVERLAY = "blocked_by_overlay"
    MULTIPLE_MATCHES = "multiple_matches"
    TIMEOUT = "timeout"
    LAUNCH_FAILURE = "launch_failure"
    ENGINE_FAILURE = "engine_failure"


class BrowserActionError(Exception):
    """A classified failure, ready to be sent back as a Response error."""

    def __init__(
        self, message: str, category: ErrorCategory = ErrorCategory.ENGINE_FAILURE
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category


# Markup of the element that swallowed the click, e.g.
#   <div class="cookie-overlay">…</div> intercepts pointer events
_INTERCEPTOR_RE = re.compile(r"(<[^\n]*?>)[^\n<]*intercepts pointer events", re.I)
_STRICT_COUNT_RE = re.compile(r"resolved to (\d+) elements", re.I)


def _describe(ref: str | None) -> str:
    return f'Element "{ref}"' if ref else "Element"


def _blocked_by_overlay(raw: str, ref: str | None) -> str:
    message = (
        f"{_describe(ref)} is blocked by another element "
        "(likely a modal or overlay). Try dismissing it first."
    )
    match = _INTERCEPTOR_RE.search(raw)
    interceptor = match.group(1) if match else raw
    if "cookie" in interceptor.lower():
        message += " Try dismissing cookie banners first."
    return message


def _multiple_matches(raw: str, ref: str | None) -> str:
    match = _STRICT_COUNT_RE.search(raw)
    count = match.group(1) if match else "multiple"
    target = f'Selector "{ref}"' if ref else "Selector"
    return (
        f"{target} matched {count} elements. "
        "Run 'snapshot' to get updated refs, or use a more specific selector."
    )


def _not_visible(raw: str, ref: str | None) -> str:
    return f"{_describe(ref)} is not visible. Try scrolling it into view."


def _not_found(raw: str, ref: str | None) -> str:
    return (
        f"{_describe(ref)} not found or not visible. "
        "Run 'snapshot' to see current page elements."
    )


def _timeout(raw: str, ref: str | None) -> str:
    target = f' on "{ref}"' if ref else ""
    return (
        f"Action{target} timed out. The page may still be loading; "
        "try 'wait' or take a new snapshot."
    )


def _launch_failure(raw: str, ref: str | None) -> str:
    headline = raw.strip().splitlines()[0] if raw.strip() else raw
    return (
        f"Failed to launch browser: {headline}. "
        "Run 'patchright install chromium' or set AGENT_BROWSER_EXECUTABLE_PATH."
    )


@dataclass(frozen=True)
class ErrorRule:
    """One classification rule.

    ``all_of`` substrings must all appear, ``any_of`` (if given) needs at
    least one, ``none_of`` must all be absent.  Matching is case-insensitive.
    """

    category: ErrorCategory
    render: Callable[[str, str | None], str]
    all_of: tuple[str, ...] = ()
    any_of: tuple[str, ...] = ()
    none_of: tuple[str, ...] = ()

    def matches(self, text: str) -> bool:
        lowered = text.lower()
        if not all(s in lowered for s in self.all_of):
            return False
        if self.any_of and not any(s in lowered for s in self.any_of):
            return False
        return not any(s in lowered for s in self.none_of)


ERROR_RULES: tuple[ErrorRule, ...] = (
    # Must precede the timeout rules: an intercepted click also times out.
    ErrorRule(
        ErrorCategory.BLOCKED_BY_OVERLAY,
        _blocked_by_overlay,
        all_of=("intercepts pointer events",),
    ),
    ErrorRule(
        ErrorCategory.MULTIPLE_MATCHES,
        _multiple_matches,
        all_of=("strict mode violation",),
    ),
    ErrorRule(
        ErrorCategory.NOT_VISIBLE,
        _not_visible,
        all_of=("not visible",),
        none_of=("timeout",),
    ),
    ErrorRule(
        ErrorCategory.NOT_FOUND_OR_NOT_VISIBLE,
        _not_found,
        all_of=("timeout", "waiting for"),
    ),
    ErrorRule(
        ErrorCategory.TIMEOUT,
        _timeout,
        all_of=("timeout",),
    ),
    ErrorRule(
        ErrorCategory.LAUNCH_FAILURE,
        _launch_failure,
        any_of=(
            "executable doesn't exist",
            "failed to launch",
            "browsertype.launch",
        ),
    ),
)


def classify_error(text: str) -> ErrorRule | None:
    """Return the first rule in ``ERROR_RULES`` matching *text*."""
    for rule in ERROR_RULES:
        if rule.matches(text):
            return rule
    return None


def to_launch_error(error: BaseException) -> BrowserActionError:
    """Classify a failure raised while starting the browser."""
    if isinstance(error, BrowserActionError):
        return error
    return BrowserActionError(
        _launch_failure(str(error), None), ErrorCategory.LAUNCH_FAILURE
    )


def to_ai_friendly_error(
    error: BaseException | str, ref: str | None = None
) -> BrowserActionError:
    """Translate a raw engine failure into a ``BrowserActionError``.

    *ref* is the selector or ref the failed command targeted; it is quoted in
    the message so the caller can tell which element was involved.
    """
    if isinstance(error, BrowserActionError):
        return error
    text = error if isinstance(error, str) else str(error)
    rule = classify_error(text)
    if rule is None:
        return BrowserActionError(text, ErrorCategory.ENGINE_FAILURE)
    return BrowserActionError(rule.render(text, ref), rule.category)
