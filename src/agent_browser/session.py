"""Session file management for agent-browser.

Resolves the per-session runtime files a daemon owns.  All files for every
session live side by side in one socket directory:

    <socket-dir>/
      default.sock      # Unix domain socket (POSIX)
      default.port      # Bound TCP port (Windows)
      default.pid       # Daemon PID, written only after a successful bind
      default.stream    # Live-preview stream port, when streaming is enabled
      default.log       # Daemon log
      default.old.log   # Previous log, rotated once the size limit is hit

The socket directory is resolved in this order:

1. ``AGENT_BROWSER_SOCKET_DIR``
2. ``$XDG_RUNTIME_DIR/agent-browser``
3. ``~/.agent-browser``
4. ``<tempdir>/agent-browser``
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("agent_browser.session")

IS_WINDOWS = sys.platform == "win32"

_APP_DIR_NAME = "agent-browser"
_HOME_DIR_NAME = ".agent-browser"
_ENV_SESSION_VAR = "AGENT_BROWSER_SESSION"
_ENV_SOCKET_DIR_VAR = "AGENT_BROWSER_SOCKET_DIR"
_DEFAULT_SESSION = "default"

# Dynamic/private port range used for the Windows TCP transport.
PORT_RANGE_START = 49152
PORT_RANGE_SIZE = 16383


# ---------------------------------------------------------------------------
# Session name resolution
# ---------------------------------------------------------------------------


def resolve_session_name(explicit: str | None = None) -> str:
    """Determine which session name to use.

    Priority (highest to lowest):

    1. Explicit *explicit* argument (if not ``None`` and not empty).
    2. The ``AGENT_BROWSER_SESSION`` environment variable.
    3. ``"default"``.
    """
    if explicit:
        return explicit
    env_value = os.environ.get(_ENV_SESSION_VAR, "").strip()
    if env_value:
        return env_value
    return _DEFAULT_SESSION


# ---------------------------------------------------------------------------
# Directory helpers
# ---------------------------------------------------------------------------


def get_app_dir() -> Path:
    """Return the default base directory for socket, pid and log files."""
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        return Path(runtime_dir) / _APP_DIR_NAME

    try:
        home = Path.home()
    except RuntimeError:
        home = None
    if home is not None and str(home):
        return home / _HOME_DIR_NAME

    return Path(tempfile.gettempdir()) / _APP_DIR_NAME


def get_socket_dir() -> Path:
    """Return the socket directory, honouring ``AGENT_BROWSER_SOCKET_DIR``."""
    override = os.environ.get(_ENV_SOCKET_DIR_VAR)
    if override:
        return Path(override)
    return get_app_dir()


def ensure_socket_dir() -> Path:
    """Return the socket directory, creating it if it does not exist."""
    socket_dir = get_socket_dir()
    socket_dir.mkdir(parents=True, exist_ok=True)
    return socket_dir


# ---------------------------------------------------------------------------
# Per-session paths
# ---------------------------------------------------------------------------


def get_port_for_session(name: str) -> int:
    """Return the deterministic TCP port for *name*.

    The name is hashed with the classic ``h * 31 + c`` string hash, wrapped
    to a signed 32-bit integer, and folded into 49152-65535.
    """
    h = 0
    for ch in name:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return PORT_RANGE_START + (abs(h) % PORT_RANGE_SIZE)


def get_socket_path(name: str) -> Path:
    """Return the Unix domain socket path for the given session."""
    return get_socket_dir() / f"{name}.sock"


def get_port_file(name: str) -> Path:
    """Return the file recording the bound TCP port (Windows transport)."""
    return get_socket_dir() / f"{name}.port"


def get_pid_file(name: str) -> Path:
    """Return the PID file path for the given session."""
    return get_socket_dir() / f"{name}.pid"


def get_stream_port_file(name: str) -> Path:
    """Return the file announcing the live-preview stream port."""
    return get_socket_dir() / f"{name}.stream"


def get_log_path(name: str) -> Path:
    """Return the log file path for the given session."""
    return get_socket_dir() / f"{name}.log"


def get_old_log_path(name: str) -> Path:
    """Return the path the log is rotated to once it grows too large."""
    return get_socket_dir() / f"{name}.old.log"


@dataclass(frozen=True)
class UnixConnection:
    path: Path


@dataclass(frozen=True)
class TcpConnection:
    port: int
    host: str = "127.0.0.1"


def get_connection_info(name: str) -> UnixConnection | TcpConnection:
    """Return where a client should connect to reach the daemon for *name*.

    On the TCP transport the ``.port`` file wins over the hashed port because
    the daemon may have moved to a neighbouring port after a collision.
    """
    if not IS_WINDOWS:
        return UnixConnection(get_socket_path(name))
    try:
        text = get_port_file(name).read_text(encoding="utf-8").strip()
        return TcpConnection(int(text))
    except (FileNotFoundError, ValueError):
        return TcpConnection(get_port_for_session(name))


# ---------------------------------------------------------------------------
# PID management
# ---------------------------------------------------------------------------


def write_pid(name: str, pid: int) -> None:
    """Write *pid* to the session's PID file."""
    get_pid_file(name).write_text(str(pid), encoding="utf-8")


def read_pid(name: str) -> int | None:
    """Read the PID from the session's PID file.

    Returns ``None`` if the file is missing, empty, or contains non-integer
    content.
    """
    try:
        text = get_pid_file(name).read_text(encoding="utf-8").strip()
        if not text:
            return None
        return int(text)
    except (FileNotFoundError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    if IS_WINDOWS:
        # os.kill(pid, 0) would terminate the process on Windows.
        import ctypes

        kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
        handle = kernel32.OpenProcess(0x1000, False, pid)
        if not handle:
            return False
        exit_code = ctypes.c_ulong()
        try:
            ok = kernel32.GetExitCodeProcess(handle, ctypes.byref(exit_code))
        finally:
            kernel32.CloseHandle(handle)
        return bool(ok) and exit_code.value == 259  # STILL_ACTIVE
    try:
        os.kill(pid, 0)
    except PermissionError:
        # Process exists but belongs to someone else.
        return True
    except OSError:
        return False
    return True


def is_daemon_running(name: str) -> bool:
    """Return ``True`` if the daemon process for *name* is still running.

    Sends signal 0 to the recorded PID, which checks for process existence
    without delivering anything.  A PID file on its own proves nothing:
    whenever the check fails the session's files are removed before
    reporting ``False``.
    """
    pid = read_pid(name)
    if pid is None or not _pid_alive(pid):
        cleanup_session(name)
        return False
    return True


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


def session_files(name: str) -> list[Path]:
    """Return the transient runtime files owned by a session's daemon."""
    files = [get_pid_file(name), get_stream_port_file(name)]
    if IS_WINDOWS:
        files.append(get_port_file(name))
    else:
        files.append(get_socket_path(name))
    return files


def cleanup_session(name: str) -> None:
    """Remove the pid, stream-port and socket/port files for *name*.

    Safe to call any number of times; files that are already gone are
    ignored.  Log files are kept.
    """
    for path in session_files(name):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove %s: %s", path, exc)
