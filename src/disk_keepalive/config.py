"""Configuration system for disk-keepalive."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class KeepAliveConfig:
    """Ping interval bounds shared by every volume worker."""

    default_interval: float = 30.0  # Seconds between pings when nothing is persisted
    min_interval: float = 5.0
    max_interval: float = 120.0


@dataclass
class PingConfig:
    """Probe I/O performed against each active volume on every tick.

    The probe file is written, flushed to the medium, read back and deleted.
    On success a handful of existing files are read at random offsets so the
    drive sees activity beyond a single fixed location.
    """

    probe_size: int = 65536  # Bytes of random data written per probe (64 KiB)
    probe_prefix: str = ".dka_"  # Probe filename prefix, process ID is appended
    random_file_count: int = 5  # Existing files read per successful probe
    scan_limit: int = 200  # Filesystem entries enumerated when picking files
    min_file_size: int = 4096  # Candidate files must be larger than this
    max_file_size: int = 50_000_000  # ...and smaller than this
    reads_per_file: int = 3  # Random offsets read per chosen file
    read_size: int = 8192  # Bytes per random read


@dataclass
class EjectConfig:
    """Retry budget for unmount+eject."""

    attempts: int = 3
    retry_delay: float = 0.5  # Seconds between attempts
    settle_delay: float = 0.3  # Seconds before the first attempt, lets ping I/O drain


@dataclass
class DiscoveryConfig:
    """Volume discovery and mount watching."""

    poll_interval: float = 2.0  # Seconds between mount table checks
    excluded_prefixes: list[str] = field(default_factory=lambda: ["/System"])
    diskutil_timeout: float = 5.0  # Seconds allowed per `diskutil info` call


@dataclass
class SystemConfig:
    """Daemon housekeeping."""

    log_buffer_size: int = 100  # Entries kept in the in-memory event log
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


@dataclass
class UpdatesConfig:
    """Changelog-based update check."""

    enabled: bool = True
    changelog_url: str = (
        "https://raw.githubusercontent.com/meichengg/disk-keep-alive/master/CHANGELOG.md"
    )
    check_interval_hours: float = 6.0
    timeout: float = 10.0  # HTTP timeout in seconds


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """User-editable settings, one dataclass per TOML table, plus derived paths."""

    keepalive: KeepAliveConfig = field(default_factory=KeepAliveConfig)
    ping: PingConfig = field(default_factory=PingConfig)
    eject: EjectConfig = field(default_factory=EjectConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    updates: UpdatesConfig = field(default_factory=UpdatesConfig)

    @property
    def config_dir(self) -> Path:
        """Holds config.toml."""
        return Path.home() / ".config" / "disk-keepalive"

    @property
    def config_path(self) -> Path:
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Holds the persisted engine state."""
        return Path.home() / ".local" / "share" / "disk-keepalive"

    @property
    def state_dir(self) -> Path:
        """Log files; safe to delete."""
        return Path.home() / ".local" / "state" / "disk-keepalive"

    @property
    def runtime_dir(self) -> Path:
        """PID file and socket. Under /tmp so a reboot clears them."""
        return Path("/tmp/disk-keepalive")

    @property
    def store_path(self) -> Path:
        """Persisted engine state (active volumes, interval, login flag)."""
        return self.data_dir / "state.toml"

    @property
    def log_path(self) -> Path:
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        return self.runtime_dir / "daemon.pid"

    @property
    def socket_path(self) -> Path:
        """Control socket shared by the daemon and the CLI."""
        return self.runtime_dir / "daemon.sock"

    def save(self, path: Path | None = None) -> None:
        """Write every section to path (default: config_path), creating parents."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        sections = ["keepalive", "ping", "eject", "discovery", "system", "updates"]
        for name in sections:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Read path (default: config_path). Missing tables and keys keep their
        dataclass defaults; a missing file yields Config().

        Raises:
            ValueError: The file is not valid TOML.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            keepalive=_load_keepalive_config(data.get("keepalive", {})),
            ping=_load_ping_config(data.get("ping", {})),
            eject=_load_eject_config(data.get("eject", {})),
            discovery=_load_discovery_config(data.get("discovery", {})),
            system=_load_system_config(data.get("system", {})),
            updates=_load_updates_config(data.get("updates", {})),
        )


def _load_keepalive_config(data: dict) -> KeepAliveConfig:
    """Load keepalive config, validating that the interval bounds are ordered."""
    d = KeepAliveConfig()
    min_interval = data.get("min_interval", d.min_interval)
    max_interval = data.get("max_interval", d.max_interval)
    default_interval = data.get("default_interval", d.default_interval)

    if min_interval <= 0:
        raise ValueError(f"min_interval must be > 0, got {min_interval}")
    if max_interval < min_interval:
        raise ValueError(
            f"max_interval ({max_interval}) must be >= min_interval ({min_interval})"
        )
    if not min_interval <= default_interval <= max_interval:
        raise ValueError(
            f"default_interval must be within [{min_interval}, {max_interval}], "
            f"got {default_interval}"
        )

    return KeepAliveConfig(
        default_interval=float(default_interval),
        min_interval=float(min_interval),
        max_interval=float(max_interval),
    )


def _load_ping_config(data: dict) -> PingConfig:
    """Load ping config from TOML data."""
    d = PingConfig()
    config = PingConfig(
        probe_size=data.get("probe_size", d.probe_size),
        probe_prefix=data.get("probe_prefix", d.probe_prefix),
        random_file_count=data.get("random_file_count", d.random_file_count),
        scan_limit=data.get("scan_limit", d.scan_limit),
        min_file_size=data.get("min_file_size", d.min_file_size),
        max_file_size=data.get("max_file_size", d.max_file_size),
        reads_per_file=data.get("reads_per_file", d.reads_per_file),
        read_size=data.get("read_size", d.read_size),
    )
    if config.probe_size < 1:
        raise ValueError(f"probe_size must be >= 1, got {config.probe_size}")
    if not config.probe_prefix:
        raise ValueError("probe_prefix must not be empty")
    if config.max_file_size <= config.min_file_size:
        raise ValueError(
            f"max_file_size ({config.max_file_size}) must be > "
            f"min_file_size ({config.min_file_size})"
        )
    return config


def _load_eject_config(data: dict) -> EjectConfig:
    """Load eject config from TOML data."""
    d = EjectConfig()
    attempts = data.get("attempts", d.attempts)
    if attempts < 1:
        raise ValueError(f"eject attempts must be >= 1, got {attempts}")
    return EjectConfig(
        attempts=attempts,
        retry_delay=data.get("retry_delay", d.retry_delay),
        settle_delay=data.get("settle_delay", d.settle_delay),
    )


def _load_discovery_config(data: dict) -> DiscoveryConfig:
    """Load discovery config from TOML data."""
    d = DiscoveryConfig()
    return DiscoveryConfig(
        poll_interval=data.get("poll_interval", d.poll_interval),
        excluded_prefixes=list(data.get("excluded_prefixes", d.excluded_prefixes)),
        diskutil_timeout=data.get("diskutil_timeout", d.diskutil_timeout),
    )


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    log_buffer_size = data.get("log_buffer_size", d.log_buffer_size)
    if log_buffer_size < 1:
        raise ValueError(f"log_buffer_size must be >= 1, got {log_buffer_size}")
    return SystemConfig(
        log_buffer_size=log_buffer_size,
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )


def _load_updates_config(data: dict) -> UpdatesConfig:
    """Load update check config from TOML data."""
    d = UpdatesConfig()
    return UpdatesConfig(
        enabled=data.get("enabled", d.enabled),
        changelog_url=data.get("changelog_url", d.changelog_url),
        check_interval_hours=data.get("check_interval_hours", d.check_interval_hours),
        timeout=data.get("timeout", d.timeout),
    )
