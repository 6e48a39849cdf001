"""Synchronous client for the agent-browser daemon.

Connects to a session's daemon over its Unix domain socket (or localhost
TCP port on Windows), sends one command and returns the decoded response.
Also starts daemons on demand.
"""

from __future__ import annotations

import json
import os
import socket
import subprocess
import sys
import time
import uuid

from agent_browser.protocol import UNKNOWN_ID
from agent_browser.session import (
    TcpConnection,
    cleanup_session,
    get_connection_info,
    is_daemon_running,
    read_pid,
    resolve_session_name,
)


def _receive_line(sock: socket.socket, buffer_size: int = 65536) -> bytes:
    """Read from *sock* until a full line has arrived or the peer closes.

    Responses are newline-delimited JSON and may be large (snapshots), so
    reading continues across as many chunks as needed.
    """
    data = b""
    while True:
        chunk = sock.recv(buffer_size)
        if not chunk:
            break
        data += chunk
        if b"\n" in data:
            break
    return data.split(b"\n", 1)[0].strip()


def _failure(command_id: str, message: str) -> dict:
    return {"id": command_id, "success": False, "error": message}


def _connect(session_name: str, timeout: float) -> socket.socket:
    info = get_connection_info(session_name)
    if isinstance(info, TcpConnection):
        return socket.create_connection((info.host, info.port), timeout=timeout)
    if not info.path.exists():
        raise FileNotFoundError(str(info.path))
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s.settimeout(timeout)
        s.connect(str(info.path))
    except Exception:
        s.close()
        raise
    return s


def send_command(
    session_name: str | None,
    command: dict,
    timeout: float = 120.0,
) -> dict:
    """Send *command* to the daemon of *session_name* and return its response.

    A missing ``id`` is filled in with a random one.  The result always has
    a ``success`` key; failures to reach the daemon are reported in the same
    shape as daemon-side failures.
    """
    session_name = resolve_session_name(session_name)
    payload = dict(command)
    payload.setdefault("id", uuid.uuid4().hex[:8])
    command_id = str(payload.get("id", UNKNOWN_ID))

    try:
        s = _connect(session_name, timeout)
    except FileNotFoundError:
        return _failure(
            command_id,
            f"Session '{session_name}' is not running. Start it with ensure_daemon().",
        )
    except ConnectionRefusedError:
        cleanup_session(session_name)
        return _failure(
            command_id,
            f"Session '{session_name}' daemon is not responding. "
            "Socket was stale and has been cleaned up.",
        )
    except OSError as e:
        return _failure(command_id, f"Connection error: {e}")

    try:
        s.sendall(json.dumps(payload).encode("utf-8") + b"\n")
        data = _receive_line(s)
        if not data:
            return _failure(command_id, "Daemon closed the connection without replying")
        return json.loads(data)
    except socket.timeout:
        return _failure(command_id, f"Command timed out after {timeout}s")
    except (OSError, ValueError) as e:
        return _failure(command_id, f"Connection error: {e}")
    finally:
        s.close()


def ensure_daemon(session_name: str | None = None, timeout: float = 15.0) -> bool:
    """Start the daemon for *session_name* unless one is already running.

    The daemon is spawned detached as ``python -m agent_browser.daemon``
    with ``AGENT_BROWSER_DAEMON=1``; this function then polls until its PID
    file names a live process.

    Returns ``True`` if the daemon is running, ``False`` otherwise.
    """
    session_name = resolve_session_name(session_name)
    if is_daemon_running(session_name):
        return True

    env = dict(os.environ)
    env["AGENT_BROWSER_DAEMON"] = "1"
    env["AGENT_BROWSER_SESSION"] = session_name

    popen_kwargs: dict = {
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
        "env": env,
    }
    if sys.platform == "win32":
        popen_kwargs["creationflags"] = (
            subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        )
    else:
        popen_kwargs["start_new_session"] = True

    proc = subprocess.Popen(
        [sys.executable, "-m", "agent_browser.daemon"], **popen_kwargs
    )

    start_time = time.monotonic()
    # The PID file only appears once the daemon has bound its socket.
    while time.monotonic() - start_time < timeout:
        if proc.poll() is not None:
            return False
        if read_pid(session_name) == proc.pid:
            return True
        time.sleep(0.1)
    return False


def close_session(session_name: str | None = None, timeout: float = 30.0) -> dict:
    """Ask the daemon of *session_name* to close its browser and exit."""
    session_name = resolve_session_name(session_name)
    if not is_daemon_running(session_name):
        return {"id": "close", "success": True, "data": {"closed": False}}
    return send_command(session_name, {"id": "close", "action": "close"}, timeout)
