"""Live preview of the daemon's active page over a websocket.

Clients connecting to ``ws://127.0.0.1:<port>`` get a ``status`` message and
then a ``frame`` message (base64 JPEG) every ``interval`` seconds while a
browser is launched.  Anything the client sends is ignored.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import time
from typing import Any

import websockets

logger = logging.getLogger("agent_browser.stream")

STREAM_HOST = "127.0.0.1"
FRAME_QUALITY = 70


class StreamServer:
    def __init__(self, browser: Any, port: int, interval: float = 0.5) -> None:
        self._browser = browser
        self._requested_port = port
        self._interval = interval
        self._server: Any = None
        self._frame_task: asyncio.Task | None = None
        self._clients: set[Any] = set()

    @property
    def port(self) -> int:
        """The bound port, or the requested one before ``start()``."""
        if self._server is not None:
            for sock in self._server.sockets:
                return sock.getsockname()[1]
        return self._requested_port

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def start(self) -> None:
        self._server = await websockets.serve(
            self._handle_client, STREAM_HOST, self._requested_port
        )
        self._frame_task = asyncio.create_task(self._frame_loop())
        logger.info("Stream server listening on ws://%s:%d", STREAM_HOST, self.port)

    async def stop(self) -> None:
        """Stop the frame loop and close the server.  Idempotent."""
        task, self._frame_task = self._frame_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        server, self._server = self._server, None
        if server is not None:
            server.close()
            await server.wait_closed()
            logger.info("Stream server stopped")
        self._clients.clear()

    def status_message(self) -> str:
        return json.dumps(
            {
                "type": "status",
                "connected": True,
                "launched": self._browser.is_launched(),
            }
        )

    async def _handle_client(self, websocket: Any) -> None:
        self._clients.add(websocket)
        logger.debug("Stream client connected (%d total)", len(self._clients))
        try:
            await websocket.send(self.status_message())
            async for _ in websocket:
                pass
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Stream client went away")
        finally:
            self._clients.discard(websocket)

    async def _frame_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if not self._clients or not self._browser.is_launched():
                continue
            await self.broadcast_frame()

    async def broadcast_frame(self) -> bool:
        """Capture one frame and send it to every client.

        Returns ``False`` when no screenshot could be taken.
        """
        data = await self._browser.screenshot_jpeg(FRAME_QUALITY)
        if data is None:
            return False
        message = json.dumps(
            {
                "type": "frame",
                "data": base64.b64encode(data).decode("ascii"),
                "timestamp": int(time.time() * 1000),
            }
        )
        for websocket in list(self._clients):
            try:
                await websocket.send(message)
            except websockets.exceptions.ConnectionClosed:
                self._clients.discard(websocket)
        return True
