# src/disk_keepalive/socket_server.py
"""Unix socket server exposing the engine to the CLI.

Protocol: newline-delimited JSON, one request per line.

Requests:
- {"type": "snapshot"}: reply with one state message
- {"type": "command", "command": <name>, ...}: run a command, reply with a result
- {"type": "subscribe"}: reply with the current state, then push a state
  message after every engine change until the client disconnects

Replies:
- {"type": "state", ...snapshot fields}
- {"type": "result", "ok": bool, "message": str}
"""

from __future__ import annotations

import asyncio
import json
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from disk_keepalive.engine import KeepAliveEngine
    from disk_keepalive.volumes import Volume

log = structlog.get_logger()


class CommandError(Exception):
    """A command request could not be carried out."""


class SocketServer:
    """Unix domain socket server for engine control and state streaming."""

    def __init__(self, socket_path: Path, engine: KeepAliveEngine) -> None:
        self.socket_path = socket_path
        self.engine = engine
        self._server: asyncio.Server | None = None
        self._subscribers: set[asyncio.StreamWriter] = set()
        self._changed = asyncio.Event()
        self._broadcast_task: asyncio.Task | None = None

    @property
    def has_subscribers(self) -> bool:
        return len(self._subscribers) > 0

    async def start(self) -> None:
        """Start the socket server."""
        if self.socket_path.exists():
            self.socket_path.unlink()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
        )
        os.chmod(self.socket_path, stat.S_IRUSR | stat.S_IWUSR)

        self.engine.add_listener(self._changed.set)
        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        log.info("socket_server_started", path=str(self.socket_path))

    async def stop(self) -> None:
        """Stop the socket server."""
        self.engine.remove_listener(self._changed.set)

        if self._broadcast_task:
            self._broadcast_task.cancel()
            try:
                await self._broadcast_task
            except asyncio.CancelledError:
                pass
            self._broadcast_task = None

        for writer in list(self._subscribers):
            writer.close()
        self._subscribers.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self.socket_path.exists():
            self.socket_path.unlink()

        log.info("socket_server_stopped")

    async def _broadcast_loop(self) -> None:
        """Push a state message to subscribers whenever the engine changes."""
        while True:
            await self._changed.wait()
            self._changed.clear()
            if not self._subscribers:
                continue
            data = _encode(self._state_message())
            for writer in list(self._subscribers):
                try:
                    writer.write(data)
                    await writer.drain()
                except (ConnectionError, OSError):
                    self._subscribers.discard(writer)

    def _state_message(self) -> dict[str, Any]:
        return {"type": "state", **self.engine.snapshot().to_dict()}

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve requests from one connection until it closes."""
        log.debug("socket_client_connected")
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    request = json.loads(line.decode())
                except (json.JSONDecodeError, UnicodeDecodeError):
                    await _send(writer, _result(False, "Invalid JSON"))
                    continue
                if not isinstance(request, dict):
                    await _send(writer, _result(False, "Request must be an object"))
                    continue

                kind = request.get("type")
                if kind == "snapshot":
                    await _send(writer, self._state_message())
                elif kind == "subscribe":
                    self._subscribers.add(writer)
                    await _send(writer, self._state_message())
                elif kind == "command":
                    await _send(writer, await self._run_command(request))
                else:
                    await _send(writer, _result(False, f"Unknown request type: {kind}"))
        except (ConnectionError, OSError):
            pass
        finally:
            self._subscribers.discard(writer)
            writer.close()
            log.debug("socket_client_disconnected")

    async def _run_command(self, request: dict[str, Any]) -> dict[str, Any]:
        name = request.get("command")
        handler = _COMMANDS.get(name) if isinstance(name, str) else None
        if handler is None:
            return _result(False, f"Unknown command: {name}")
        try:
            message = await handler(self, request)
        except CommandError as e:
            return _result(False, str(e))
        except ValueError as e:
            return _result(False, str(e))
        log.info("socket_command", command=name)
        return _result(True, message)

    # ─────────────────────────────────────────────────────────────────────
    # Command handlers
    # ─────────────────────────────────────────────────────────────────────

    def _volume(self, request: dict[str, Any]) -> Volume:
        ref = request.get("volume")
        if not isinstance(ref, str) or not ref:
            raise CommandError("Missing volume")
        volume = self.engine.find(ref)
        if volume is None:
            raise CommandError(f"No mounted volume matches {ref!r}")
        return volume

    async def _cmd_start(self, request: dict[str, Any]) -> str:
        volume = self._volume(request)
        self.engine.start(volume)
        return f"Started {volume.name}"

    async def _cmd_stop(self, request: dict[str, Any]) -> str:
        ref = request.get("volume")
        if isinstance(ref, str) and self.engine.is_active(ref.rstrip("/") or "/"):
            path = ref.rstrip("/") or "/"
            self.engine.stop(path)
            return f"Stopped {path}"
        volume = self._volume(request)
        self.engine.stop(volume.path)
        return f"Stopped {volume.name}"

    async def _cmd_toggle(self, request: dict[str, Any]) -> str:
        volume = self._volume(request)
        active = self.engine.toggle(volume)
        return f"{'Started' if active else 'Stopped'} {volume.name}"

    async def _cmd_start_all(self, request: dict[str, Any]) -> str:
        self.engine.start_all()
        return f"Started {len(self.engine.active_paths)} volume(s)"

    async def _cmd_stop_all(self, request: dict[str, Any]) -> str:
        self.engine.stop_all()
        return "Stopped all volumes"

    async def _cmd_interval(self, request: dict[str, Any]) -> str:
        seconds = request.get("seconds")
        if not isinstance(seconds, (int, float)) or isinstance(seconds, bool):
            raise CommandError("Missing or invalid seconds")
        self.engine.set_interval(float(seconds))
        return f"Interval set to {int(seconds)}s"

    async def _cmd_eject(self, request: dict[str, Any]) -> str:
        volume = self._volume(request)
        task = self.engine.eject(volume)
        if not request.get("wait"):
            return f"Ejecting {volume.name}"
        result = await task
        if not result.ok:
            raise CommandError(f"Eject failed: {volume.name} - {result.error}")
        return f"Ejected {volume.name}"

    async def _cmd_refresh(self, request: dict[str, Any]) -> str:
        changed = await self.engine.refresh()
        return "Volume list updated" if changed else "Volume list unchanged"


_COMMANDS = {
    "start": SocketServer._cmd_start,
    "stop": SocketServer._cmd_stop,
    "toggle": SocketServer._cmd_toggle,
    "start_all": SocketServer._cmd_start_all,
    "stop_all": SocketServer._cmd_stop_all,
    "interval": SocketServer._cmd_interval,
    "eject": SocketServer._cmd_eject,
    "refresh": SocketServer._cmd_refresh,
}


def _result(ok: bool, message: str) -> dict[str, Any]:
    return {"type": "result", "ok": ok, "message": message}


def _encode(message: dict[str, Any]) -> bytes:
    return json.dumps(message).encode() + b"\n"


async def _send(writer: asyncio.StreamWriter, message: dict[str, Any]) -> None:
    writer.write(_encode(message))
    await writer.drain()
