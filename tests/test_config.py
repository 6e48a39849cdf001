"""Tests for agent_browser.config module."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from agent_browser.config import (
    DaemonSettings,
    auto_launch_command,
    get_version,
    load_settings,
)


class TestDaemonSettings:
    def test_defaults(self):
        settings = DaemonSettings()
        assert settings.session == "default"
        assert settings.stream_port == 0
        assert settings.headed is False
        assert settings.daemon is False
        assert settings.extension_list is None
        assert settings.arg_list is None
        assert settings.stream_interval == 0.5

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("AGENT_BROWSER_SESSION", "work")
        monkeypatch.setenv("AGENT_BROWSER_STREAM_PORT", "9223")
        monkeypatch.setenv("AGENT_BROWSER_HEADED", "1")
        monkeypatch.setenv("AGENT_BROWSER_DAEMON", "1")
        monkeypatch.setenv("AGENT_BROWSER_IGNORE_HTTPS_ERRORS", "true")
        settings = DaemonSettings()
        assert settings.session == "work"
        assert settings.stream_port == 9223
        assert settings.headed is True
        assert settings.daemon is True
        assert settings.ignore_https_errors is True

    def test_empty_values_are_ignored(self, monkeypatch):
        monkeypatch.setenv("AGENT_BROWSER_HEADED", "")
        monkeypatch.setenv("AGENT_BROWSER_STREAM_PORT", "")
        settings = DaemonSettings()
        assert settings.headed is False
        assert settings.stream_port == 0

    def test_blank_session_is_default(self):
        assert DaemonSettings(session="  ").session == "default"

    def test_extensions_comma_separated(self, monkeypatch):
        monkeypatch.setenv("AGENT_BROWSER_EXTENSIONS", "/ext/a, /ext/b,,")
        assert DaemonSettings().extension_list == ["/ext/a", "/ext/b"]

    def test_args_comma_or_newline(self, monkeypatch):
        monkeypatch.setenv(
            "AGENT_BROWSER_ARGS", "--no-sandbox\n--disable-gpu,--mute-audio"
        )
        assert DaemonSettings().arg_list == [
            "--no-sandbox",
            "--disable-gpu",
            "--mute-audio",
        ]

    def test_bad_stream_interval(self):
        with pytest.raises(ValidationError):
            DaemonSettings(stream_interval=0)


class TestAutoLaunchCommand:
    def test_defaults_to_headless_chromium(self):
        command = auto_launch_command(DaemonSettings())
        assert command.action == "launch"
        assert command.headless is True
        assert command.browser == "chromium"
        assert command.proxy is None
        assert command.extensions is None

    def test_maps_environment(self, monkeypatch):
        monkeypatch.setenv("AGENT_BROWSER_HEADED", "true")
        monkeypatch.setenv("AGENT_BROWSER_EXECUTABLE_PATH", "/opt/chrome")
        monkeypatch.setenv("AGENT_BROWSER_EXTENSIONS", "/ext/a")
        monkeypatch.setenv("AGENT_BROWSER_PROFILE", "/tmp/profile")
        monkeypatch.setenv("AGENT_BROWSER_STATE", "/tmp/state.json")
        monkeypatch.setenv("AGENT_BROWSER_ARGS", "--no-sandbox")
        monkeypatch.setenv("AGENT_BROWSER_USER_AGENT", "agent/1.0")
        monkeypatch.setenv("AGENT_BROWSER_PROXY", "http://proxy:3128")
        monkeypatch.setenv("AGENT_BROWSER_PROXY_BYPASS", "localhost")
        monkeypatch.setenv("AGENT_BROWSER_IGNORE_HTTPS_ERRORS", "1")

        command = auto_launch_command(DaemonSettings())

        assert command.headless is False
        assert command.executable_path == "/opt/chrome"
        assert command.extensions == ["/ext/a"]
        assert command.profile == "/tmp/profile"
        assert command.storage_state == "/tmp/state.json"
        assert command.args == ["--no-sandbox"]
        assert command.user_agent == "agent/1.0"
        assert command.proxy.server == "http://proxy:3128"
        assert command.proxy.bypass == "localhost"
        assert command.ignore_https_errors is True


class TestLoadSettings:
    def test_explicit_session_wins(self, monkeypatch):
        monkeypatch.setenv("AGENT_BROWSER_SESSION", "env")
        assert load_settings("explicit").session == "explicit"

    def test_env_session(self, monkeypatch):
        monkeypatch.setenv("AGENT_BROWSER_SESSION", "env")
        assert load_settings().session == "env"


def test_get_version():
    assert isinstance(get_version(), str)
