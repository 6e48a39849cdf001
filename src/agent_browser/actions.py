"""Command execution for the agent-browser daemon.

``execute_command`` dispatches a parsed command to its handler and turns the
outcome into exactly one ``Response``.  Handlers return plain JSON-able
data; any exception they raise is classified by ``to_ai_friendly_error``.

Elements can be addressed three ways:

* directly, by selector or snapshot ref (``click``, ``fill``, ...);
* through a semantic finder (``getbyrole``, ``getbytext``, ...) followed by
  a subaction;
* by position among a selector's matches (``nth``) followed by a subaction.

Commands that can move keyboard focus arm the session's focus guard before
running.  If they fail the guard is cleared again straight away; if they
succeed it stays armed until the next full-page snapshot clears it.
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from agent_browser.errors import (
    BrowserActionError,
    ErrorCategory,
    to_ai_friendly_error,
    to_launch_error,
)
from agent_browser.protocol import (
    BaseCommand,
    FinderCommand,
    Response,
    error_response,
    success_response,
)

__all__ = [
    "FOCUS_MUTATING_ACTIONS",
    "execute_command",
    "mutates_focus",
    "to_ai_friendly_error",
]

logger = logging.getLogger("agent_browser.actions")

# Everything that focuses its target before acting, including typing and
# selecting.
FOCUS_MUTATING_ACTIONS = frozenset(
    {"click", "dblclick", "focus", "check", "uncheck", "fill", "type", "press", "select"}
)
FOCUS_MUTATING_SUBACTIONS = frozenset(
    {"click", "dblclick", "focus", "check", "uncheck", "fill", "type"}
)

Handler = Callable[[Any, Any], Awaitable[Any]]
_HANDLERS: dict[str, Handler] = {}


def handles(action: str) -> Callable[[Handler], Handler]:
    def register(fn: Handler) -> Handler:
        _HANDLERS[action] = fn
        return fn

    return register


def mutates_focus(command: BaseCommand) -> bool:
    """Return ``True`` if *command* may shift focus and needs the guard."""
    if command.action in FOCUS_MUTATING_ACTIONS:
        return True
    if isinstance(command, FinderCommand):
        return command.subaction in FOCUS_MUTATING_SUBACTIONS
    return False


def _describe_target(command: BaseCommand) -> str | None:
    selector = getattr(command, "selector", None)
    if selector:
        return selector
    for attr in ("role", "text", "label", "placeholder", "test_id"):
        value = getattr(command, attr, None)
        if value:
            return value
    return None


async def execute_command(command: BaseCommand, browser: Any) -> Response:
    """Run *command* against *browser* and build its Response.

    Never raises for command-level failures.
    """
    handler = _HANDLERS.get(command.action)
    if handler is None:
        return error_response(command.id, f"Unknown action: {command.action}")

    guarded = mutates_focus(command)
    try:
        if guarded:
            await browser.arm_snapshot_focus_guard()
        data = await handler(command, browser)
    except Exception as exc:
        if guarded:
            try:
                await browser.clear_snapshot_focus_guard()
            except Exception:
                logger.warning("Could not clear focus guard", exc_info=True)
        error = to_ai_friendly_error(exc, _describe_target(command))
        logger.debug(
            "Command %s (%s) failed [%s]: %s",
            command.id,
            command.action,
            error.category.value,
            exc,
        )
        return error_response(command.id, error.message)
    return success_response(command.id, data)


# ---------------------------------------------------------------------------
# Subactions (finders and nth)
# ---------------------------------------------------------------------------


async def _run_subaction(locator: Any, command: FinderCommand) -> dict[str, Any]:
    sub = command.subaction
    if sub == "click":
        await locator.click()
        return {"clicked": True}
    if sub == "dblclick":
        await locator.dblclick()
        return {"clicked": True}
    if sub == "fill":
        await locator.fill(_require_value(command))
        return {"filled": True}
    if sub == "type":
        await locator.press_sequentially(_require_value(command))
        return {"typed": True}
    if sub == "hover":
        await locator.hover()
        return {"hovered": True}
    if sub == "focus":
        await locator.focus()
        return {"focused": True}
    if sub == "check":
        await locator.check()
        return {"checked": True}
    if sub == "uncheck":
        await locator.uncheck()
        return {"checked": False}
    if sub == "text":
        return {"text": await locator.inner_text()}
    raise BrowserActionError(f"Unknown subaction: {sub}", ErrorCategory.UNKNOWN_ACTION)


def _require_value(command: FinderCommand) -> str:
    if command.value is None:
        raise BrowserActionError(
            f"Subaction '{command.subaction}' requires a 'value'",
            ErrorCategory.PARSE_ERROR,
        )
    return command.value


def _exact(command: Any) -> dict[str, Any]:
    return {} if command.exact is None else {"exact": command.exact}


@handles("getbyrole")
async def _getbyrole(command: Any, browser: Any) -> Any:
    kwargs: dict[str, Any] = {}
    if command.name is not None:
        kwargs["name"] = command.name
    kwargs.update(_exact(command))
    locator = browser.get_page().get_by_role(command.role, **kwargs)
    return await _run_subaction(locator, command)


@handles("getbytext")
async def _getbytext(command: Any, browser: Any) -> Any:
    locator = browser.get_page().get_by_text(command.text, **_exact(command))
    return await _run_subaction(locator, command)


@handles("getbylabel")
async def _getbylabel(command: Any, browser: Any) -> Any:
    locator = browser.get_page().get_by_label(command.label, **_exact(command))
    return await _run_subaction(locator, command)


@handles("getbyplaceholder")
async def _getbyplaceholder(command: Any, browser: Any) -> Any:
    locator = browser.get_page().get_by_placeholder(
        command.placeholder, **_exact(command)
    )
    return await _run_subaction(locator, command)


@handles("getbyalttext")
async def _getbyalttext(command: Any, browser: Any) -> Any:
    locator = browser.get_page().get_by_alt_text(command.text, **_exact(command))
    return await _run_subaction(locator, command)


@handles("getbytitle")
async def _getbytitle(command: Any, browser: Any) -> Any:
    locator = browser.get_page().get_by_title(command.text, **_exact(command))
    return await _run_subaction(locator, command)


@handles("getbytestid")
async def _getbytestid(command: Any, browser: Any) -> Any:
    locator = browser.get_page().get_by_test_id(command.test_id)
    return await _run_subaction(locator, command)


@handles("nth")
async def _nth(command: Any, browser: Any) -> Any:
    base = browser.get_page().locator(command.selector)
    target = base.last if command.index < 0 else base.nth(command.index)
    return await _run_subaction(target, command)


# ---------------------------------------------------------------------------
# Lifecycle and navigation
# ---------------------------------------------------------------------------


@handles("launch")
async def _launch(command: Any, browser: Any) -> Any:
    try:
        await browser.launch(command)
    except Exception as exc:
        raise to_launch_error(exc) from exc
    return {"launched": True}


@handles("close")
async def _close(command: Any, browser: Any) -> Any:
    await browser.close()
    return {"closed": True}


@handles("navigate")
async def _navigate(command: Any, browser: Any) -> Any:
    page = browser.get_page()
    await page.goto(command.url, wait_until=command.wait_until)
    return {"url": page.url, "title": await page.title()}


@handles("back")
async def _back(command: Any, browser: Any) -> Any:
    page = browser.get_page()
    await page.go_back()
    return {"url": page.url}


@handles("forward")
async def _forward(command: Any, browser: Any) -> Any:
    page = browser.get_page()
    await page.go_forward()
    return {"url": page.url}


@handles("reload")
async def _reload(command: Any, browser: Any) -> Any:
    page = browser.get_page()
    await page.reload()
    return {"url": page.url}


@handles("url")
async def _url(command: Any, browser: Any) -> Any:
    return {"url": browser.get_page().url}


@handles("title")
async def _title(command: Any, browser: Any) -> Any:
    return {"title": await browser.get_page().title()}


@handles("content")
async def _content(command: Any, browser: Any) -> Any:
    if command.selector:
        return {"html": await browser.get_locator(command.selector).inner_html()}
    return {"html": await browser.get_page().content()}


# ---------------------------------------------------------------------------
# Direct selector operations
# ---------------------------------------------------------------------------


@handles("click")
async def _click(command: Any, browser: Any) -> Any:
    kwargs: dict[str, Any] = {}
    if command.button:
        kwargs["button"] = command.button
    if command.click_count:
        kwargs["click_count"] = command.click_count
    await browser.get_locator(command.selector).click(**kwargs)
    return {"clicked": True}


@handles("dblclick")
async def _dblclick(command: Any, browser: Any) -> Any:
    await browser.get_locator(command.selector).dblclick()
    return {"clicked": True}


@handles("fill")
async def _fill(command: Any, browser: Any) -> Any:
    await browser.get_locator(command.selector).fill(command.value)
    return {"filled": True}


@handles("type")
async def _type(command: Any, browser: Any) -> Any:
    kwargs = {} if command.delay is None else {"delay": command.delay}
    await browser.get_locator(command.selector).press_sequentially(
        command.text, **kwargs
    )
    return {"typed": True}


@handles("press")
async def _press(command: Any, browser: Any) -> Any:
    if command.selector:
        await browser.get_locator(command.selector).press(command.key)
    else:
        await browser.get_page().keyboard.press(command.key)
    return {"pressed": command.key}


@handles("hover")
async def _hover(command: Any, browser: Any) -> Any:
    await browser.get_locator(command.selector).hover()
    return {"hovered": True}


@handles("focus")
async def _focus(command: Any, browser: Any) -> Any:
    await browser.get_locator(command.selector).focus()
    return {"focused": True}


@handles("check")
async def _check(command: Any, browser: Any) -> Any:
    await browser.get_locator(command.selector).check()
    return {"checked": True}


@handles("uncheck")
async def _uncheck(command: Any, browser: Any) -> Any:
    await browser.get_locator(command.selector).uncheck()
    return {"checked": False}


@handles("select")
async def _select(command: Any, browser: Any) -> Any:
    selected = await browser.get_locator(command.selector).select_option(
        command.values
    )
    return {"selected": selected}


@handles("scrollintoview")
async def _scrollintoview(command: Any, browser: Any) -> Any:
    await browser.get_locator(command.selector).scroll_into_view_if_needed()
    return {"scrolled": True}


@handles("gettext")
async def _gettext(command: Any, browser: Any) -> Any:
    return {"text": await browser.get_locator(command.selector).inner_text()}


@handles("getattribute")
async def _getattribute(command: Any, browser: Any) -> Any:
    locator = browser.get_locator(command.selector)
    return {"value": await locator.get_attribute(command.attribute)}


@handles("isvisible")
async def _isvisible(command: Any, browser: Any) -> Any:
    return {"visible": await browser.get_locator(command.selector).is_visible()}


@handles("count")
async def _count(command: Any, browser: Any) -> Any:
    return {"count": await browser.get_locator(command.selector).count()}


@handles("wait")
async def _wait(command: Any, browser: Any) -> Any:
    if command.selector:
        kwargs: dict[str, Any] = {"state": command.state or "visible"}
        if command.timeout is not None:
            kwargs["timeout"] = command.timeout
        await browser.get_locator(command.selector).wait_for(**kwargs)
    elif command.timeout is not None:
        await browser.get_page().wait_for_timeout(command.timeout)
    else:
        raise BrowserActionError(
            "wait requires a 'selector' or a 'timeout'", ErrorCategory.PARSE_ERROR
        )
    return {"waited": True}


# ---------------------------------------------------------------------------
# Page inspection
# ---------------------------------------------------------------------------


@handles("evaluate")
async def _evaluate(command: Any, browser: Any) -> Any:
    return {"result": await browser.get_page().evaluate(command.script)}


@handles("snapshot")
async def _snapshot(command: Any, browser: Any) -> Any:
    snapshot = await browser.get_snapshot(
        selector=command.selector,
        interactive=command.interactive,
        max_depth=command.max_depth,
    )
    return {"snapshot": snapshot.tree, "refs": snapshot.refs}


@handles("screenshot")
async def _screenshot(command: Any, browser: Any) -> Any:
    kwargs: dict[str, Any] = {}
    if command.path:
        Path(command.path).parent.mkdir(parents=True, exist_ok=True)
        kwargs["path"] = command.path
    if command.selector:
        data = await browser.get_locator(command.selector).screenshot(**kwargs)
    else:
        data = await browser.get_page().screenshot(
            full_page=command.full_page, **kwargs
        )
    if command.path:
        return {"path": command.path}
    return {"base64": base64.b64encode(data).decode("ascii")}


@handles("console")
async def _console(command: Any, browser: Any) -> Any:
    messages = list(browser.console_messages)
    if command.clear:
        browser.console_messages.clear()
    return {"messages": messages}


@handles("errors")
async def _errors(command: Any, browser: Any) -> Any:
    errors = list(browser.page_errors)
    if command.clear:
        browser.page_errors.clear()
    return {"errors": errors}
