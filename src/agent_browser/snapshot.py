"""Accessibility snapshot module for agent-browser.

Uses Patchright's built-in ``snapshotForAI`` to generate accessibility trees
with element references (``[ref=eN]``) that later commands use to target
elements.  Refs are resolved at action time through the built-in
``aria-ref=eN`` selector engine, so nothing is injected into the DOM.

Full-page snapshots run inside the focus guard (see ``focus_guard``): the
guard is armed before ``snapshotForAI`` and cleared afterwards whether the
call succeeded or not.  When ``snapshotForAI`` fails, a plain
``aria_snapshot`` of the document root is returned instead, without refs.
Selector-scoped snapshots are a side-effect free read of that subtree and
never touch the guard.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from agent_browser.focus_guard import FocusGuard

logger = logging.getLogger("agent_browser.snapshot")

# Regex to extract ref ids from snapshotForAI output lines.
# Matches [ref=e2], [ref=s10], etc.
_REF_RE = re.compile(r"\[ref=([\w]+)\]")

# Regex to extract role and optional name from the beginning of a snapshot line.
# Groups: (role), (optional quoted name)
_ROLE_NAME_RE = re.compile(r"^\s*- (\w+)(?:\s+\"([^\"]*)\")?\s*")

SNAPSHOT_TIMEOUT_MS = 30000

INTERACTIVE_ROLES = frozenset(
    {
        "button",
        "checkbox",
        "combobox",
        "link",
        "listbox",
        "menuitem",
        "menuitemcheckbox",
        "menuitemradio",
        "option",
        "radio",
        "searchbox",
        "slider",
        "spinbutton",
        "switch",
        "tab",
        "textbox",
        "treeitem",
    }
)

RefInfo = dict[str, str | None]


@dataclass
class Snapshot:
    tree: str
    refs: dict[str, RefInfo] = field(default_factory=dict)


def parse_refs(snapshot_text: str) -> dict[str, RefInfo]:
    """Build the ref table for a ``snapshotForAI`` tree.

    Each line carrying a ``[ref=...]`` token and starting with ``- role``
    becomes one entry; property and text lines are skipped.
    """
    refs: dict[str, RefInfo] = {}
    for line in snapshot_text.split("\n"):
        ref_match = _REF_RE.search(line)
        if not ref_match:
            continue
        role_match = _ROLE_NAME_RE.match(line)
        if not role_match:
            continue
        ref_id = ref_match.group(1)
        refs[ref_id] = {
            "selector": f"aria-ref={ref_id}",
            "role": role_match.group(1),
            "name": role_match.group(2),
        }
    return refs


def _line_depth(line: str) -> int:
    return (len(line) - len(line.lstrip(" "))) // 2


def filter_tree(
    tree: str,
    refs: dict[str, RefInfo],
    interactive: bool = False,
    max_depth: int | None = None,
) -> tuple[str, dict[str, RefInfo]]:
    """Apply the ``interactive`` and ``max_depth`` options to a tree.

    Interactive mode flattens the tree to the lines whose ref points at an
    interactive role.  The ref table is pruned to the refs left in the text.
    """
    lines = tree.split("\n")
    if max_depth is not None:
        lines = [line for line in lines if _line_depth(line) <= max_depth]
    if interactive:
        kept = []
        for line in lines:
            ref_match = _REF_RE.search(line)
            if not ref_match:
                continue
            info = refs.get(ref_match.group(1))
            if info and info["role"] in INTERACTIVE_ROLES:
                kept.append(line.strip())
        lines = kept
    text = "\n".join(lines)
    if not interactive and max_depth is None:
        return text, refs
    remaining = set(_REF_RE.findall(text))
    return text, {ref: info for ref, info in refs.items() if ref in remaining}


async def _snapshot_for_ai(page: Any) -> str:
    """Return the ref-annotated tree from the ``snapshotForAI`` channel call."""
    impl = page._impl_obj
    result = await impl._channel.send_return_as_dict(
        "snapshotForAI",
        lambda kw: SNAPSHOT_TIMEOUT_MS,
        {"timeout": SNAPSHOT_TIMEOUT_MS},
        is_internal=True,
    )
    return result["full"]


async def get_enhanced_snapshot(
    page: Any,
    selector: str | None = None,
    *,
    interactive: bool = False,
    max_depth: int | None = None,
    focus_guard: FocusGuard | None = None,
) -> Snapshot:
    """Take an accessibility snapshot of *page*.

    Parameters
    ----------
    page:
        A patchright async ``Page`` object.
    selector:
        Restrict the snapshot to this subtree.  Scoped snapshots carry no
        refs and leave the focus guard alone.
    interactive, max_depth:
        Post-filters, see ``filter_tree``.
    focus_guard:
        The session's guard token.  A throwaway token is used when omitted.

    Returns
    -------
    Snapshot
        ``tree`` is always set; ``refs`` is empty for scoped and degraded
        snapshots.
    """
    if selector:
        tree = await page.locator(selector).aria_snapshot()
        text, _ = filter_tree(tree, {}, max_depth=max_depth)
        return Snapshot(tree=text)

    guard = focus_guard if focus_guard is not None else FocusGuard()
    try:
        await guard.arm(page)
        tree = await _snapshot_for_ai(page)
        refs = parse_refs(tree)
    except Exception as exc:
        logger.warning("Full snapshot failed, falling back to aria_snapshot: %s", exc)
        tree = None
        refs = {}

    try:
        await guard.clear(page)
    except Exception as exc:
        logger.warning("Could not clear focus guard after snapshot: %s", exc)

    if tree is None:
        tree = await page.locator(":root").aria_snapshot()

    text, refs = filter_tree(tree, refs, interactive=interactive, max_depth=max_depth)
    return Snapshot(tree=text, refs=refs)
