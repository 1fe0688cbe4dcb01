"""Client side of the daemon's JSON-lines control socket."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any


class SocketClient:
    """One connection to the daemon socket.

    Connects or raises; reconnecting is up to the caller. Usable as an async
    context manager:

        async with SocketClient(path) as client:
            reply = await client.request({"type": "snapshot"})
    """

    def __init__(self, socket_path: Path):
        self.socket_path = socket_path
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    async def __aenter__(self) -> SocketClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        """Open the connection.

        Raises:
            FileNotFoundError: The socket file is missing, i.e. no daemon.
        """
        if not self.socket_path.exists():
            raise FileNotFoundError(f"Socket not found: {self.socket_path}")
        self._reader, self._writer = await asyncio.open_unix_connection(str(self.socket_path))

    async def disconnect(self) -> None:
        writer, self._reader, self._writer = self._writer, None, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    async def send_message(self, msg: dict[str, Any]) -> None:
        """Write msg as one JSON line.

        Raises:
            ConnectionError: Not connected, or the write failed.
        """
        if not self.connected:
            raise ConnectionError("Not connected")
        try:
            self._writer.write(json.dumps(msg).encode() + b"\n")
            await self._writer.drain()
        except OSError as e:
            raise ConnectionError(f"Send failed: {e}") from e

    async def read_message(self, timeout: float | None = 5.0) -> dict[str, Any]:
        """Read the next JSON line.

        Args:
            timeout: Seconds to wait, or None to wait forever

        Raises:
            ConnectionError: Not connected, or the daemon hung up.
            TimeoutError: Nothing arrived within timeout.
        """
        if self._reader is None:
            raise ConnectionError("Not connected")
        line = await asyncio.wait_for(self._reader.readline(), timeout=timeout)
        if not line:
            raise ConnectionError("Connection closed by server")
        return json.loads(line.decode())

    async def request(self, msg: dict[str, Any], timeout: float | None = 5.0) -> dict[str, Any]:
        await self.send_message(msg)
        return await self.read_message(timeout=timeout)

    async def subscribe(self) -> AsyncIterator[dict[str, Any]]:
        """Yield every state message the daemon pushes, starting with the current one."""
        await self.send_message({"type": "subscribe"})
        while True:
            message = await self.read_message(timeout=None)
            if message.get("type") == "state":
                yield message


async def request_once(
    socket_path: Path, msg: dict[str, Any], timeout: float | None = 5.0
) -> dict[str, Any]:
    """Send a single request on a fresh connection and return the reply.

    Raises:
        FileNotFoundError: The daemon is not running.
        ConnectionError: The daemon hung up before replying.
    """
    async with SocketClient(socket_path) as client:
        return await client.request(msg, timeout=timeout)
