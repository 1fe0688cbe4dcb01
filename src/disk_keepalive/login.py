"""Launch-at-login via a per-user launchd agent."""

from __future__ import annotations

import os
import plistlib
import subprocess
import sys
from pathlib import Path

import structlog

log = structlog.get_logger()

LABEL = "com.disk-keepalive.daemon"


class LaunchAgentError(Exception):
    """launchctl refused to load or unload the agent."""


def plist_path() -> Path:
    return Path.home() / "Library" / "LaunchAgents" / f"{LABEL}.plist"


def service_target() -> str:
    """launchd domain for the current user's GUI session."""
    return f"gui/{os.getuid()}"


def render_plist(python_path: str, log_path: Path) -> str:
    """LaunchAgent that runs the daemon at login and keeps it alive."""
    agent = {
        "Label": LABEL,
        "ProgramArguments": [python_path, "-m", "disk_keepalive.cli", "daemon"],
        "RunAtLoad": True,
        "KeepAlive": {"SuccessfulExit": False},
        "StandardOutPath": str(log_path),
        "StandardErrorPath": str(log_path),
        "ProcessType": "Background",
    }
    return plistlib.dumps(agent).decode()


def is_installed() -> bool:
    return plist_path().exists()


def install_agent(log_path: Path, python_path: str | None = None) -> Path:
    """Write the agent plist and bootstrap it into the user's launchd domain.

    The plist is written even if bootstrapping fails; launchd then picks it
    up at the next login.

    Returns:
        Path of the written plist.

    Raises:
        LaunchAgentError: If launchctl rejects the agent.
    """
    path = plist_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_plist(python_path or sys.executable, log_path))
    log.info("launch_agent_written", path=str(path))

    try:
        subprocess.run(
            ["launchctl", "bootstrap", service_target(), str(path)],
            check=True,
            capture_output=True,
        )
    except FileNotFoundError as e:
        raise LaunchAgentError("launchctl not found") from e
    except subprocess.CalledProcessError as e:
        stderr_text = e.stderr.decode(errors="replace") if e.stderr else ""
        # Bootstrapping an already-loaded service is not an error
        if "already loaded" in stderr_text.lower() or "already bootstrapped" in stderr_text.lower():
            return path
        raise LaunchAgentError(stderr_text.strip() or f"launchctl exited {e.returncode}") from e
    return path


def remove_agent() -> bool:
    """Boot the agent out of launchd and delete its plist.

    Returns:
        True if a plist was removed, False if none was installed.

    Raises:
        LaunchAgentError: If launchctl fails for a reason other than the
            service not running. The plist is still removed.
    """
    path = plist_path()
    if not path.exists():
        return False

    error = None
    try:
        subprocess.run(
            ["launchctl", "bootout", f"{service_target()}/{LABEL}"],
            check=True,
            capture_output=True,
        )
    except FileNotFoundError:
        error = "launchctl not found"
    except subprocess.CalledProcessError as e:
        stderr = e.stderr or b""
        # "No such process" is fine - service may not be running
        if b"No such process" not in stderr and b"Could not find service" not in stderr:
            error = stderr.decode(errors="replace").strip() or f"launchctl exited {e.returncode}"

    path.unlink()
    log.info("launch_agent_removed", path=str(path))
    if error:
        raise LaunchAgentError(error)
    return True
