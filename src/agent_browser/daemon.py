"""The agent-browser daemon process.

One daemon serves one session.  It listens on a Unix domain socket (or a
localhost TCP port on Windows), reads newline-delimited JSON commands from
any number of client connections and answers each with one JSON line.  The
browser is launched lazily on the first command that needs it.

Run with ``python -m agent_browser.daemon`` or ``agent-browser-daemon``.
"""

from __future__ import annotations

import asyncio
import atexit
import codecs
import errno
import logging
import logging.handlers
import os
import re
import signal
import sys
from dataclasses import dataclass, field
from typing import Any

from agent_browser.actions import execute_command
from agent_browser.browser import BrowserManager
from agent_browser.config import (
    DaemonSettings,
    auto_launch_command,
    get_version,
    load_settings,
)
from agent_browser.errors import to_launch_error
from agent_browser.protocol import (
    Response,
    error_response,
    parse_command,
    serialize_response,
)
from agent_browser.session import (
    IS_WINDOWS,
    cleanup_session,
    ensure_socket_dir,
    get_log_path,
    get_old_log_path,
    get_port_file,
    get_port_for_session,
    get_socket_path,
    get_stream_port_file,
    is_daemon_running,
    read_pid,
    write_pid,
)
from agent_browser.stream import StreamServer

logger = logging.getLogger("agent_browser.daemon")

# Browsers and HTTP clients sometimes poke at local ports; such requests
# are dropped without a reply.
HTTP_REQUEST_RE = re.compile(
    r"^(GET|POST|PUT|DELETE|HEAD|OPTIONS|PATCH|CONNECT|TRACE)\s", re.IGNORECASE
)

TCP_HOST = "127.0.0.1"
MAX_PORT_PROBES = 5
READ_CHUNK_SIZE = 65536
LOG_MAX_BYTES = 1024 * 1024
CLOSE_TIMEOUT = 5.0

_ADDR_IN_USE = {errno.EADDRINUSE, 10048}  # 10048 is WSAEADDRINUSE


class DaemonAlreadyRunningError(RuntimeError):
    """Another live daemon already owns the session."""


def is_http_request(text: str) -> bool:
    return HTTP_REQUEST_RE.match(text.lstrip()) is not None


@dataclass
class DaemonState:
    """Everything a running daemon owns, passed to each connection."""

    session: str
    settings: DaemonSettings
    browser: BrowserManager = field(default_factory=BrowserManager)
    stream: StreamServer | None = None
    server: asyncio.AbstractServer | None = None
    connections: set[Connection] = field(default_factory=set)
    shutdown: asyncio.Event = field(default_factory=asyncio.Event)
    exit_code: int = 0
    torn_down: bool = False

    def request_shutdown(self, exit_code: int = 0) -> None:
        """Ask the daemon to stop.  The first request decides the exit code."""
        if not self.shutdown.is_set():
            self.exit_code = exit_code
            self.shutdown.set()


# ---------------------------------------------------------------------------
# Command processing
# ---------------------------------------------------------------------------


async def process_line(state: DaemonState, line: str) -> tuple[Response, bool]:
    """Handle one request line.

    Returns the response and whether the daemon should shut down after
    sending it.
    """
    parsed = parse_command(line)
    if not parsed.success:
        logger.warning("Rejected request: %s", parsed.error)
        return error_response(parsed.id, parsed.error), False

    command = parsed.command
    logger.debug("Received command %s: %s", command.id, command.action)

    if command.action not in ("launch", "close") and not state.browser.is_launched():
        logger.info("No browser running, auto-launching for %r", command.action)
        try:
            await state.browser.launch(auto_launch_command(state.settings))
        except Exception as exc:
            error = to_launch_error(exc)
            logger.error("Auto-launch failed: %s", exc)
            return error_response(command.id, error.message), False

    response = await execute_command(command, state.browser)
    if response.success:
        logger.debug("Command %s (%s) succeeded", command.id, command.action)
    else:
        logger.warning(
            "Command %s (%s) failed: %s", command.id, command.action, response.error
        )
    return response, command.action == "close"


class Connection:
    """One client connection: line framing plus in-order dispatch."""

    def __init__(
        self,
        state: DaemonState,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self.state = state
        self.reader = reader
        self.writer = writer
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._http_checked = False

    def feed(self, data: bytes) -> list[str] | None:
        """Add *data* to the buffer and return the complete, non-blank lines.

        Returns ``None`` if the connection turned out to carry HTTP.
        """
        self._buffer += self._decoder.decode(data)
        if not self._http_checked and self._buffer.strip():
            self._http_checked = True
            if is_http_request(self._buffer):
                return None
        *lines, self._buffer = self._buffer.split("\n")
        return [line for line in lines if line.strip()]

    async def send(self, response: Response) -> None:
        self.writer.write(serialize_response(response).encode("utf-8") + b"\n")
        await self.writer.drain()

    async def serve(self) -> None:
        try:
            while True:
                data = await self.reader.read(READ_CHUNK_SIZE)
                if not data:
                    break
                lines = self.feed(data)
                if lines is None:
                    logger.warning("Dropping HTTP request on the command socket")
                    break
                for line in lines:
                    response, shutdown = await process_line(self.state, line)
                    await self.send(response)
                    if shutdown:
                        logger.info("Close command received, shutting down")
                        self.state.request_shutdown(0)
                        return
        except (ConnectionResetError, BrokenPipeError) as exc:
            logger.debug("Client disconnected: %s", exc)
        finally:
            await self.close()

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError) as exc:
            logger.debug("Error while closing client connection: %s", exc)


def _connection_handler(state: DaemonState):
    async def handle_client(
        reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        connection = Connection(state, reader, writer)
        state.connections.add(connection)
        try:
            await connection.serve()
        finally:
            state.connections.discard(connection)

    return handle_client


# ---------------------------------------------------------------------------
# Listener
# ---------------------------------------------------------------------------


async def bind_listener(state: DaemonState) -> asyncio.AbstractServer:
    """Bind the session's command socket.

    On Windows the session's hashed port is tried first, then up to
    ``MAX_PORT_PROBES - 1`` following ports; the chosen port is recorded in
    the ``.port`` file.
    """
    handler = _connection_handler(state)
    if not IS_WINDOWS:
        socket_path = get_socket_path(state.session)
        server = await asyncio.start_unix_server(handler, path=str(socket_path))
        logger.info("Listening on %s", socket_path)
        return server

    base_port = get_port_for_session(state.session)
    last_error: OSError | None = None
    for port in range(base_port, base_port + MAX_PORT_PROBES):
        try:
            server = await asyncio.start_server(handler, TCP_HOST, port)
        except OSError as exc:
            if exc.errno not in _ADDR_IN_USE:
                raise
            logger.info("Port %d in use, trying the next one", port)
            last_error = exc
            continue
        get_port_file(state.session).write_text(str(port), encoding="utf-8")
        logger.info("Listening on %s:%d", TCP_HOST, port)
        return server
    raise OSError(
        errno.EADDRINUSE,
        f"No free port in {base_port}-{base_port + MAX_PORT_PROBES - 1}",
    ) from last_error


async def _start_stream(state: DaemonState) -> None:
    port = state.settings.stream_port
    stream = StreamServer(state.browser, port, state.settings.stream_interval)
    try:
        await stream.start()
    except OSError as exc:
        logger.error("Could not start stream server on port %d: %s", port, exc)
        return
    state.stream = stream
    get_stream_port_file(state.session).write_text(
        str(stream.port), encoding="utf-8"
    )


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


async def teardown(state: DaemonState) -> None:
    """Stop everything and remove the session files.  Idempotent."""
    if state.torn_down:
        return
    state.torn_down = True

    if state.stream is not None:
        await state.stream.stop()
        state.stream = None

    await state.browser.close()

    server, state.server = state.server, None
    if server is not None:
        server.close()
        for connection in list(state.connections):
            await connection.close()
        try:
            await asyncio.wait_for(server.wait_closed(), CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for client connections to close")

    cleanup_session(state.session)
    logger.info("Session %r cleaned up", state.session)


def _install_signal_handlers(
    state: DaemonState, loop: asyncio.AbstractEventLoop
) -> None:
    for name in ("SIGINT", "SIGTERM", "SIGHUP"):
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, state.request_shutdown, 0)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler.
            signal.signal(
                sig,
                lambda *_: loop.call_soon_threadsafe(state.request_shutdown, 0),
            )


def _loop_exception_handler(state: DaemonState):
    def handle(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        logger.error(
            "Unhandled error in event loop: %s",
            context.get("message", "unknown error"),
            exc_info=exc,
        )
        state.request_shutdown(1)

    return handle


def _install_excepthook(session_name: str) -> None:
    previous = sys.excepthook

    def hook(exc_type, exc, tb) -> None:
        logger.critical("Uncaught exception", exc_info=(exc_type, exc, tb))
        cleanup_session(session_name)
        previous(exc_type, exc, tb)

    sys.excepthook = hook


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def run_daemon(settings: DaemonSettings) -> int:
    """Serve the session described by *settings* until shut down.

    The PID file is written only after the listener is bound, so a daemon
    that fails to bind never looks alive.  Returns the exit code.

    Raises ``DaemonAlreadyRunningError`` without touching any session file
    if a live daemon already serves the session.  Files left by a dead one
    are removed before binding.
    """
    session = settings.session
    ensure_socket_dir()
    if is_daemon_running(session):
        raise DaemonAlreadyRunningError(
            f"Daemon already running for session {session!r} (pid={read_pid(session)})"
        )

    state = DaemonState(session=session, settings=settings)
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_loop_exception_handler(state))

    if settings.stream_port > 0:
        await _start_stream(state)

    try:
        state.server = await bind_listener(state)
    except Exception:
        logger.exception("Failed to bind the command socket")
        await teardown(state)
        raise

    write_pid(session, os.getpid())
    _install_signal_handlers(state, loop)
    logger.info("Daemon ready for session %r (pid=%d)", session, os.getpid())

    try:
        await state.shutdown.wait()
    finally:
        await teardown(state)
    return state.exit_code


def _setup_logging(session_name: str, detach: bool) -> None:
    """Configure logging for the daemon process.

    Writes to ``<socket-dir>/<session>.log``, rotated once to
    ``<session>.old.log``.  Errors are echoed to the original stderr.  A
    detached daemon also sends *stdout*/*stderr* to the log so stray
    ``print()`` calls and tracebacks are kept.
    """
    log_path = get_log_path(session_name)
    handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=LOG_MAX_BYTES, backupCount=1, encoding="utf-8"
    )
    handler.namer = lambda _default: str(get_old_log_path(session_name))
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    if sys.stderr is not None:
        echo = logging.StreamHandler(sys.stderr)
        echo.setLevel(logging.ERROR)
        echo.setFormatter(logging.Formatter("agent-browser: %(message)s"))
        root.addHandler(echo)

    if detach:
        sys.stdout = open(log_path, "a", encoding="utf-8")  # noqa: SIM115
        sys.stderr = sys.stdout


def main() -> int:
    """Process entry point for the daemon."""
    settings = load_settings()
    session = settings.session
    ensure_socket_dir()
    _setup_logging(session, detach=settings.daemon)
    logger.info(
        "agent-browser %s daemon starting for session %r (pid=%d)",
        get_version(),
        session,
        os.getpid(),
    )
    if is_daemon_running(session):
        logger.error("Daemon already running for session %r, exiting", session)
        return 1
    atexit.register(cleanup_session, session)
    _install_excepthook(session)

    try:
        return asyncio.run(run_daemon(settings))
    except DaemonAlreadyRunningError as exc:
        logger.error("%s", exc)
        return 1
    except Exception:
        logger.exception("Daemon crashed")
        cleanup_session(session)
        return 1


if __name__ == "__main__":
    sys.exit(main())
