from __future__ import annotations

import re

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_browser.protocol import LaunchCommand, ProxySettings

DEFAULT_SESSION = "default"


def _split_list(value: str | None, pattern: str) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in re.split(pattern, value) if item.strip()]
    return items or None


class DaemonSettings(BaseSettings):
    """Daemon configuration read from ``AGENT_BROWSER_*`` environment variables.

    List-valued variables are kept as raw strings and split by the helper
    properties, because pydantic-settings would otherwise expect JSON.
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENT_BROWSER_", env_ignore_empty=True, extra="ignore"
    )

    session: str = DEFAULT_SESSION
    socket_dir: str | None = None
    stream_port: int = 0
    daemon: bool = False

    headed: bool = False
    executable_path: str | None = None
    extensions: str | None = None
    profile: str | None = None
    state: str | None = None
    args: str | None = None
    user_agent: str | None = None
    proxy: str | None = None
    proxy_bypass: str | None = None
    ignore_https_errors: bool = False

    stream_interval: float = Field(default=0.5, gt=0)

    @field_validator("session", mode="before")
    @classmethod
    def _default_blank_session(cls, v: str | None) -> str:
        if v is None or not str(v).strip():
            return DEFAULT_SESSION
        return str(v).strip()

    @property
    def extension_list(self) -> list[str] | None:
        """``AGENT_BROWSER_EXTENSIONS``, comma separated."""
        return _split_list(self.extensions, r",")

    @property
    def arg_list(self) -> list[str] | None:
        """``AGENT_BROWSER_ARGS``, comma or newline separated."""
        return _split_list(self.args, r"[,\n]")


def auto_launch_command(settings: DaemonSettings) -> LaunchCommand:
    """Build the launch command used when a command arrives before ``launch``."""
    proxy = None
    if settings.proxy:
        proxy = ProxySettings(server=settings.proxy, bypass=settings.proxy_bypass or None)
    return LaunchCommand(
        id="auto",
        action="launch",
        headless=not settings.headed,
        executable_path=settings.executable_path or None,
        extensions=settings.extension_list,
        profile=settings.profile or None,
        storage_state=settings.state or None,
        args=settings.arg_list,
        user_agent=settings.user_agent or None,
        proxy=proxy,
        ignore_https_errors=settings.ignore_https_errors,
    )


def get_version() -> str:
    """Return the package version string."""
    try:
        from importlib.metadata import version

        return version("agent-browser")
    except Exception:
        return "0.1.0"


def load_settings(session_name: str | None = None) -> DaemonSettings:
    """Load daemon settings from the environment.

    An explicit *session_name* wins over ``AGENT_BROWSER_SESSION``.
    """
    settings = DaemonSettings()
    if session_name:
        settings = settings.model_copy(update={"session": session_name})
    return settings
