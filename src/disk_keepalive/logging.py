"""Console and file logging for the keep-alive daemon.

Two outputs, kept apart:

- The console gets short Rich-styled lines: daemon lifecycle messages and an
  echo of every engine log entry, so a foreground `disk-keepalive daemon`
  reads like the event log in the menu.
- The rotating log file gets JSON Lines from structlog for later grepping.
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from pathlib import Path

    from disk_keepalive.config import Config
    from disk_keepalive.ringbuffer import LogEntry

_console = Console(highlight=False)


class Icon:
    """Glyphs prefixed to console lines, as Rich markup."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    SIGNAL = "⚡"

    # Volume lifecycle
    START = "[bright_green]▶[/]"
    STOP = "[bright_red]■[/]"
    RESTORE = "[cyan]↻[/]"
    HEARTBEAT = "[magenta]♡[/]"
    INTERVAL = "[cyan]⏱[/]"
    EJECT = "⏏"

    # Mount table
    MOUNT = "[green]⬤[/]"
    UNMOUNT = "[red]⬤[/]"

    UPDATE = "[bright_yellow]★[/]"


# Tags are padded to the same width so messages line up
_LEVEL_TAGS = {
    "info": "[bright_blue]info[/]",
    "warn": "[yellow]warn[/]",
    "error": "[bold red]err [/]",
}


def log(level: str, msg: str, icon: str = "") -> None:
    """Print one timestamped console line.

    Args:
        level: "info", "warn" or "error"; anything else is shown as-is
        msg: Rich markup
        icon: One of the Icon glyphs, or empty
    """
    stamp = datetime.now().strftime("%H:%M:%S")
    tag = _LEVEL_TAGS.get(level, escape(level))
    parts = [f"[dim]{stamp}[/]", f"\\[{tag}]"]
    if icon:
        parts.append(icon)
    parts.append(msg)
    _console.print(" ".join(parts))


def info(msg: str, icon: str = "") -> None:
    log("info", msg, icon)


def error(msg: str, icon: str = "") -> None:
    log("error", msg, icon)


def volume_entry(entry: LogEntry, icon: str = "") -> None:
    """Echo an engine log entry.

    Messages carry volume names and paths, which are user data, so markup in
    them is escaped. Error entries without an explicit icon get Icon.FAIL.
    """
    if not icon and entry.level == "error":
        icon = Icon.FAIL
    log(entry.level, escape(entry.message), icon)


# ─────────────────────────────────────────────────────────────────────────────
# Daemon lifecycle
# ─────────────────────────────────────────────────────────────────────────────


def daemon_banner(version: str, qos: str | None) -> None:
    """First line printed by the daemon."""
    suffix = f" [dim](QoS {qos})[/]" if qos else ""
    info(f"[bold cyan]disk-keepalive[/] v{version}{suffix}")


def daemon_ready(interval: float, pending: int, socket_path: Path) -> None:
    """Startup finished: summarize settings and where clients connect."""
    waiting = f", waiting for [cyan]{pending}[/] saved volume(s)" if pending else ""
    info(f"Interval [cyan]{int(interval)}s[/]{waiting}")
    info(f"Listening on [cyan]{escape(str(socket_path))}[/]", Icon.OK)


def daemon_stopping() -> None:
    info("Stopping...", Icon.WAIT)


def daemon_stopped() -> None:
    info("Stopped", Icon.OK)


def signal_received(name: str) -> None:
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def already_running(pid: int | None = None) -> None:
    where = f" [dim](PID {pid})[/]" if pid else ""
    error(f"Another daemon is already running{where}", Icon.FAIL)


# ─────────────────────────────────────────────────────────────────────────────
# Structured file log
# ─────────────────────────────────────────────────────────────────────────────


def _tag_source(source: str) -> structlog.types.Processor:
    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict.setdefault("source", source)
        return event_dict

    return processor


def _json_file_handler(config: Config, source: str) -> logging.Handler:
    """Rotating handler rendering every record as one JSON object per line."""
    handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _tag_source(source),
                structlog.processors.format_exc_info,
            ],
        )
    )
    return handler


def configure(config: Config, source: str = "daemon") -> None:
    """Route structlog through stdlib logging into the JSON log file.

    Replaces any handlers already on the root logger. Records below INFO are
    dropped. Creates config.state_dir if needed.
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.INFO)
    root.addHandler(_json_file_handler(config, source))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _tag_source(source),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
