"""CLI commands for disk-keepalive."""

import click


@click.group()
@click.version_option(package_name="disk-keepalive")
def main() -> None:
    """Keep external disks from spinning down."""
    pass


def _request(msg: dict, timeout: float | None = 5.0) -> dict:
    """Send one request to the daemon, exiting with an error if it is unreachable."""
    import asyncio

    from disk_keepalive.config import Config
    from disk_keepalive.socket_client import request_once

    config = Config.load()
    try:
        return asyncio.run(request_once(config.socket_path, msg, timeout=timeout))
    except (OSError, asyncio.TimeoutError):
        click.echo("Error: daemon is not running. Start it with 'disk-keepalive daemon'.", err=True)
        raise SystemExit(1)


def _snapshot_or_none() -> dict | None:
    """Current daemon state, or None if the daemon is not reachable."""
    import asyncio

    from disk_keepalive.config import Config
    from disk_keepalive.socket_client import request_once

    config = Config.load()
    try:
        return asyncio.run(request_once(config.socket_path, {"type": "snapshot"}))
    except (OSError, asyncio.TimeoutError):
        return None


def _command(name: str, timeout: float | None = 5.0, **params) -> None:
    """Run an engine command on the daemon and echo the result."""
    reply = _request({"type": "command", "command": name, **params}, timeout=timeout)
    if not reply.get("ok"):
        click.echo(f"Error: {reply.get('message', 'command failed')}", err=True)
        raise SystemExit(1)
    click.echo(reply.get("message", "OK"))


def _new_entries(previous: list[dict], current: list[dict]) -> list[dict]:
    """Entries in current that come after the last entry of previous."""
    if not previous:
        return list(current)
    last = previous[-1]
    for i in range(len(current) - 1, -1, -1):
        if current[i] == last:
            return current[i + 1 :]
    return list(current)


def _format_entry(data: dict) -> str:
    from disk_keepalive.ringbuffer import LogEntry

    return LogEntry.from_dict(data).format()


@main.command()
def daemon() -> None:
    """Run the keep-alive daemon in the foreground."""
    import asyncio

    from disk_keepalive.daemon import run_daemon

    try:
        asyncio.run(run_daemon())
    except RuntimeError:
        raise SystemExit(1)


@main.command()
def status() -> None:
    """Quick health check."""
    from disk_keepalive.config import Config
    from disk_keepalive.formatting import format_interval
    from disk_keepalive.state import StateStore

    snapshot = _snapshot_or_none()
    if snapshot is None:
        config = Config.load()
        saved = StateStore(config.store_path, config.keepalive.default_interval).load()
        click.echo("Daemon: stopped")
        click.echo(f"Saved volumes: {len(saved.active_volume_ids)}")
        click.echo(f"Interval: {format_interval(saved.interval_seconds)}")
        return

    active = set(snapshot["active_paths"])
    failing = set(snapshot["failing_paths"])
    click.echo(f"Daemon: running (v{snapshot['version']})")
    click.echo(f"Interval: {format_interval(snapshot['interval'])}")
    click.echo(f"Active: {len(active)}  Failing: {len(failing)}")
    if snapshot["pending_ids"]:
        click.echo(f"Waiting for: {', '.join(snapshot['pending_ids'])}")

    for vol in snapshot["volumes"]:
        if vol["path"] not in active:
            continue
        state = "failing" if vol["path"] in failing else "ok"
        click.echo(f"  - {vol['name']} ({vol['path']}): {state}")


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include internal volumes")
def volumes(show_all: bool) -> None:
    """List mounted volumes."""
    from disk_keepalive.config import Config
    from disk_keepalive.formatting import format_volume_size, used_fraction
    from disk_keepalive.volumes import Volume, discover

    snapshot = _snapshot_or_none()
    if snapshot is not None:
        vols = [Volume.from_dict(v) for v in snapshot["volumes"]]
        active = set(snapshot["active_paths"])
        failing = set(snapshot["failing_paths"])
    else:
        config = Config.load()
        vols = discover(config.discovery.excluded_prefixes, config.discovery.diskutil_timeout)
        active, failing = set(), set()

    if not show_all:
        vols = [v for v in vols if v.is_external or v.path in active]
    if not vols:
        click.echo("No volumes found.")
        return

    click.echo(f"{'State':8}  {'Name':24}  {'Used':>5}  {'Capacity':30}  Path")
    click.echo("-" * 90)
    for vol in vols:
        if vol.path in failing:
            state = "failing"
        elif vol.path in active:
            state = "active"
        else:
            state = "-"
        used = f"{used_fraction(vol.free_bytes, vol.total_bytes):.0%}"
        capacity = format_volume_size(vol.free_bytes, vol.total_bytes)
        click.echo(f"{state:8}  {vol.name[:24]:24}  {used:>5}  {capacity:30}  {vol.path}")

    if snapshot is None:
        click.echo("\n(daemon not running; activity state unknown)")


@main.command()
@click.argument("volume")
def start(volume: str) -> None:
    """Start keeping VOLUME awake (path, UUID or name)."""
    _command("start", volume=volume)


@main.command()
@click.argument("volume")
def stop(volume: str) -> None:
    """Stop keeping VOLUME awake."""
    _command("stop", volume=volume)


@main.command()
@click.argument("volume")
def toggle(volume: str) -> None:
    """Start VOLUME if inactive, stop it if active."""
    _command("toggle", volume=volume)


@main.command("start-all")
def start_all() -> None:
    """Keep every mounted volume awake."""
    _command("start_all")


@main.command("stop-all")
def stop_all() -> None:
    """Stop keeping every volume awake."""
    _command("stop_all")


@main.command()
@click.argument("seconds", type=float)
def interval(seconds: float) -> None:
    """Set the ping interval in SECONDS for all volumes."""
    _command("interval", seconds=seconds)


@main.command()
@click.argument("volume")
@click.option("--no-wait", is_flag=True, help="Return as soon as the eject has started")
def eject(volume: str, no_wait: bool) -> None:
    """Stop VOLUME and unmount/eject it."""
    _command("eject", timeout=5.0 if no_wait else None, volume=volume, wait=not no_wait)


@main.command()
def refresh() -> None:
    """Re-scan mounted volumes."""
    _command("refresh")


@main.command()
@click.option("--limit", "-n", default=20, help="Number of entries to show")
def logs(limit: int) -> None:
    """Show recent engine log entries."""
    snapshot = _request({"type": "snapshot"})
    entries = snapshot["log_entries"][-limit:] if limit > 0 else []
    if not entries:
        click.echo("No log entries.")
        return
    for entry in entries:
        click.echo(_format_entry(entry))


@main.command()
def watch() -> None:
    """Follow engine log entries as they happen (Ctrl-C to stop)."""
    import asyncio

    from disk_keepalive.config import Config
    from disk_keepalive.socket_client import SocketClient

    config = Config.load()

    async def follow() -> None:
        previous: list[dict] = []
        async with SocketClient(config.socket_path) as client:
            async for state in client.subscribe():
                current = state["log_entries"]
                for entry in _new_entries(previous, current):
                    click.echo(_format_entry(entry))
                previous = current

    try:
        asyncio.run(follow())
    except KeyboardInterrupt:
        pass
    except FileNotFoundError:
        click.echo("Error: daemon is not running. Start it with 'disk-keepalive daemon'.", err=True)
        raise SystemExit(1)
    except ConnectionError:
        click.echo("Daemon disconnected.", err=True)
        raise SystemExit(1)


@main.command("check-update")
def check_update() -> None:
    """Check the published changelog for a newer release."""
    from disk_keepalive import __version__
    from disk_keepalive.config import Config
    from disk_keepalive.updates import check_for_update

    config = Config.load()
    info = check_for_update(__version__, config.updates.changelog_url, config.updates.timeout)
    if info is None:
        click.echo("Could not check for updates.", err=True)
        raise SystemExit(1)
    if info.available:
        click.echo(f"Update available: v{info.latest} (installed v{info.current})")
    else:
        click.echo(f"Up to date (v{info.current})")


@main.group()
def login() -> None:
    """Manage launch at login."""
    pass


def _store():
    from disk_keepalive.config import Config
    from disk_keepalive.state import StateStore

    config = Config.load()
    return config, StateStore(config.store_path, config.keepalive.default_interval)


@login.command("enable")
def login_enable() -> None:
    """Start the daemon automatically at login."""
    from disk_keepalive.login import LABEL, LaunchAgentError, install_agent, service_target

    config, store = _store()
    try:
        path = install_agent(config.state_dir / "launchd.log")
    except LaunchAgentError as e:
        click.echo(f"Warning: Could not start service: {e}")
    else:
        click.echo(f"Created {path}")
    store.update(launch_at_login=True)
    click.echo("Launch at login enabled")
    click.echo(f"\nTo check status: launchctl print {service_target()}/{LABEL}")


@login.command("disable")
def login_disable() -> None:
    """Stop starting the daemon at login."""
    from disk_keepalive.login import LaunchAgentError, plist_path, remove_agent

    _, store = _store()
    try:
        removed = remove_agent()
    except LaunchAgentError as e:
        click.echo(f"Warning: Could not stop service: {e}")
        removed = True
    if removed:
        click.echo(f"Removed {plist_path()}")
    else:
        click.echo("Service was not installed")
    store.update(launch_at_login=False)
    click.echo("Launch at login disabled")


@login.command("status")
def login_status() -> None:
    """Show whether launch at login is enabled."""
    from disk_keepalive.login import is_installed, plist_path

    _, store = _store()
    saved = store.load()
    click.echo(f"Launch at login: {'enabled' if saved.launch_at_login else 'disabled'}")
    click.echo(f"Agent plist: {plist_path()} ({'present' if is_installed() else 'missing'})")


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from dataclasses import fields

    from disk_keepalive.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    for section in fields(cfg):
        click.echo()
        click.echo(f"[{section.name}]")
        values = getattr(cfg, section.name)
        for f in fields(values):
            click.echo(f"  {f.name} = {getattr(values, f.name)!r}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from disk_keepalive.config import Config

    cfg = Config.load()

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from disk_keepalive.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


if __name__ == "__main__":
    main()
