"""Wire protocol for client <-> daemon communication.

One UTF-8 JSON object per line in both directions.  Requests carry at least
``id`` and ``action``; the remaining fields depend on the action and are
validated by the pydantic model registered for it.  Responses are either
``{"id", "success": true, "data"}`` or ``{"id", "success": false, "error"}``.
The success payload travels under ``data`` (not ``result``), which is the
key existing agent-browser clients read.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from agent_browser.errors import ErrorCategory

UNKNOWN_ID = "unknown"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class BaseCommand(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    action: str


class ProxySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    server: str
    bypass: str | None = None
    username: str | None = None
    password: str | None = None


class Viewport(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int
    height: int


class LaunchCommand(BaseCommand):
    action: Literal["launch"]
    headless: bool = True
    browser: Literal["chromium", "firefox", "webkit"] = "chromium"
    executable_path: str | None = Field(default=None, alias="executablePath")
    extensions: list[str] | None = None
    profile: str | None = None
    storage_state: str | None = Field(default=None, alias="storageState")
    args: list[str] | None = None
    user_agent: str | None = Field(default=None, alias="userAgent")
    proxy: ProxySettings | None = None
    ignore_https_errors: bool = Field(default=False, alias="ignoreHTTPSErrors")
    viewport: Viewport | None = None


class CloseCommand(BaseCommand):
    action: Literal["close"]


class NavigateCommand(BaseCommand):
    action: Literal["navigate"]
    url: str
    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = Field(
        default="load", alias="waitUntil"
    )


class BackCommand(BaseCommand):
    action: Literal["back"]


class ForwardCommand(BaseCommand):
    action: Literal["forward"]


class ReloadCommand(BaseCommand):
    action: Literal["reload"]


class UrlCommand(BaseCommand):
    action: Literal["url"]


class TitleCommand(BaseCommand):
    action: Literal["title"]


class ContentCommand(BaseCommand):
    action: Literal["content"]
    selector: str | None = None


class ClickCommand(BaseCommand):
    action: Literal["click"]
    selector: str
    button: Literal["left", "right", "middle"] | None = None
    click_count: int | None = Field(default=None, alias="clickCount")


class DblclickCommand(BaseCommand):
    action: Literal["dblclick"]
    selector: str


class FillCommand(BaseCommand):
    action: Literal["fill"]
    selector: str
    value: str


class TypeCommand(BaseCommand):
    action: Literal["type"]
    selector: str
    text: str
    delay: float | None = None


class PressCommand(BaseCommand):
    action: Literal["press"]
    key: str
    selector: str | None = None


class HoverCommand(BaseCommand):
    action: Literal["hover"]
    selector: str


class FocusCommand(BaseCommand):
    action: Literal["focus"]
    selector: str


class CheckCommand(BaseCommand):
    action: Literal["check"]
    selector: str


class UncheckCommand(BaseCommand):
    action: Literal["uncheck"]
    selector: str


class SelectCommand(BaseCommand):
    action: Literal["select"]
    selector: str
    values: str | list[str]


class ScrollIntoViewCommand(BaseCommand):
    action: Literal["scrollintoview"]
    selector: str


class GetTextCommand(BaseCommand):
    action: Literal["gettext"]
    selector: str


class GetAttributeCommand(BaseCommand):
    action: Literal["getattribute"]
    selector: str
    attribute: str


class IsVisibleCommand(BaseCommand):
    action: Literal["isvisible"]
    selector: str


class CountCommand(BaseCommand):
    action: Literal["count"]
    selector: str


class WaitCommand(BaseCommand):
    action: Literal["wait"]
    selector: str | None = None
    timeout: float | None = None
    state: Literal["attached", "detached", "visible", "hidden"] | None = None


class EvaluateCommand(BaseCommand):
    action: Literal["evaluate"]
    script: str


class SnapshotCommand(BaseCommand):
    action: Literal["snapshot"]
    selector: str | None = None
    interactive: bool = False
    max_depth: int | None = Field(default=None, alias="maxDepth", ge=0)


class ScreenshotCommand(BaseCommand):
    action: Literal["screenshot"]
    path: str | None = None
    full_page: bool = Field(default=False, alias="fullPage")
    selector: str | None = None


class ConsoleCommand(BaseCommand):
    action: Literal["console"]
    clear: bool = False


class ErrorsCommand(BaseCommand):
    action: Literal["errors"]
    clear: bool = False


Subaction = Literal[
    "click", "dblclick", "fill", "type", "hover", "focus", "check", "uncheck", "text"
]


class FinderCommand(BaseCommand):
    subaction: Subaction = "click"
    value: str | None = None


class GetByRoleCommand(FinderCommand):
    action: Literal["getbyrole"]
    role: str
    name: str | None = None
    exact: bool | None = None


class GetByTextCommand(FinderCommand):
    action: Literal["getbytext"]
    text: str
    exact: bool | None = None


class GetByLabelCommand(FinderCommand):
    action: Literal["getbylabel"]
    label: str
    exact: bool | None = None


class GetByPlaceholderCommand(FinderCommand):
    action: Literal["getbyplaceholder"]
    placeholder: str
    exact: bool | None = None


class GetByAltTextCommand(FinderCommand):
    action: Literal["getbyalttext"]
    text: str
    exact: bool | None = None


class GetByTitleCommand(FinderCommand):
    action: Literal["getbytitle"]
    text: str
    exact: bool | None = None


class GetByTestIdCommand(FinderCommand):
    action: Literal["getbytestid"]
    test_id: str = Field(alias="testId")


class NthCommand(FinderCommand):
    action: Literal["nth"]
    selector: str
    index: int


_COMMAND_MODELS: tuple[type[BaseCommand], ...] = (
    LaunchCommand,
    CloseCommand,
    NavigateCommand,
    BackCommand,
    ForwardCommand,
    ReloadCommand,
    UrlCommand,
    TitleCommand,
    ContentCommand,
    ClickCommand,
    DblclickCommand,
    FillCommand,
    TypeCommand,
    PressCommand,
    HoverCommand,
    FocusCommand,
    CheckCommand,
    UncheckCommand,
    SelectCommand,
    ScrollIntoViewCommand,
    GetTextCommand,
    GetAttributeCommand,
    IsVisibleCommand,
    CountCommand,
    WaitCommand,
    EvaluateCommand,
    SnapshotCommand,
    ScreenshotCommand,
    ConsoleCommand,
    ErrorsCommand,
    GetByRoleCommand,
    GetByTextCommand,
    GetByLabelCommand,
    GetByPlaceholderCommand,
    GetByAltTextCommand,
    GetByTitleCommand,
    GetByTestIdCommand,
    NthCommand,
)

Command = Annotated[Union[_COMMAND_MODELS], Field(discriminator="action")]

_command_adapter: TypeAdapter[Command] = TypeAdapter(Command)

ACTIONS: frozenset[str] = frozenset(
    get_args(model.model_fields["action"].annotation)[0] for model in _COMMAND_MODELS
)


# ---------------------------------------------------------------------------
# Parse results
# ---------------------------------------------------------------------------


class ParseSuccess(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: Literal[True] = True
    command: Command


class ParseFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: Literal[False] = False
    id: str | None = None
    error: str
    category: ErrorCategory = ErrorCategory.PARSE_ERROR


ParseResult = Union[ParseSuccess, ParseFailure]


def _format_validation_error(exc: ValidationError) -> str:
    details = []
    for err in exc.errors():
        # Drop the discriminator tag pydantic prepends to the location.
        loc = [str(part) for part in err["loc"][1:]] or [str(p) for p in err["loc"]]
        details.append(f"{'.'.join(loc)}: {err['msg']}")
    return "Validation error: " + "; ".join(details)


def parse_command(line: str | bytes) -> ParseResult:
    """Parse one protocol line into a command.

    Never raises: every problem is reported as a ``ParseFailure``, carrying
    the request id whenever it could be recovered from the line.
    """
    try:
        raw: Any = json.loads(line)
    except (ValueError, TypeError) as exc:
        return ParseFailure(error=f"Invalid JSON: {exc}")

    if not isinstance(raw, dict):
        return ParseFailure(error="Invalid command: expected a JSON object")

    raw_id = raw.get("id")
    command_id = str(raw_id) if isinstance(raw_id, (str, int)) else None
    if command_id is None:
        return ParseFailure(error="Validation error: id: Field required")
    # Clients may send numeric ids; they are echoed back as strings.
    raw = {**raw, "id": command_id}

    action = raw.get("action")
    if not isinstance(action, str) or not action:
        return ParseFailure(id=command_id, error="Validation error: action: Field required")
    if action not in ACTIONS:
        return ParseFailure(
            id=command_id,
            error=f"Unknown action: {action}",
            category=ErrorCategory.UNKNOWN_ACTION,
        )

    try:
        command = _command_adapter.validate_python(raw)
    except ValidationError as exc:
        return ParseFailure(id=command_id, error=_format_validation_error(exc))
    return ParseSuccess(command=command)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class Response(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    success: bool
    data: Any = None
    error: str | None = None


def success_response(command_id: str, data: Any = None) -> Response:
    return Response(id=command_id, success=True, data=data)


def error_response(command_id: str | None, message: str) -> Response:
    """Build a failure Response; *command_id* falls back to ``"unknown"``."""
    return Response(
        id=UNKNOWN_ID if command_id is None else command_id,
        success=False,
        error=message,
    )


def serialize_response(response: Response) -> str:
    """Serialize *response* to a single line (no trailing newline)."""
    if response.success:
        payload = {"id": response.id, "success": True, "data": response.data}
    else:
        payload = {"id": response.id, "success": False, "error": response.error}
    # json.dumps escapes control characters, so the result never spans lines.
    return json.dumps(payload, default=str)
