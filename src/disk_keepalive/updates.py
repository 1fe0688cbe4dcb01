"""Changelog-based update check.

The latest release is the first `#` or `##` heading in the published
changelog that contains an X.Y.Z version.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import requests
import structlog

log = structlog.get_logger()

_VERSION_RE = re.compile(r"\d+\.\d+\.\d+")


@dataclass(frozen=True)
class UpdateInfo:
    """Result of a successful update check."""

    current: str
    latest: str

    @property
    def available(self) -> bool:
        return is_newer(self.latest, self.current)


def parse_latest_version(changelog: str) -> str | None:
    """Return the version from the first version heading, or None."""
    for line in changelog.splitlines():
        if not (line.startswith("# ") or line.startswith("## ")):
            continue
        match = _VERSION_RE.search(line)
        if match:
            return match.group(0)
    return None


def _parts(version: str) -> tuple[int, ...]:
    match = _VERSION_RE.search(version)
    if not match:
        return ()
    return tuple(int(p) for p in match.group(0).split("."))


def is_newer(new: str, current: str) -> bool:
    """Compare X.Y.Z versions numerically ("1.10.0" is newer than "1.9.9")."""
    return _parts(new) > _parts(current)


def fetch_changelog(url: str, timeout: float = 10.0) -> str:
    """Download the changelog text.

    Raises:
        requests.RequestException: On network or HTTP errors.
    """
    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    return resp.text


def check_for_update(current: str, url: str, timeout: float = 10.0) -> UpdateInfo | None:
    """Check the changelog for a newer release.

    Returns:
        UpdateInfo, or None if the changelog could not be fetched or parsed.
    """
    try:
        text = fetch_changelog(url, timeout=timeout)
    except requests.RequestException as exc:
        log.warning("update_check_failed", url=url, error=str(exc))
        return None

    latest = parse_latest_version(text)
    if latest is None:
        log.warning("update_check_no_version", url=url)
        return None
    return UpdateInfo(current=current, latest=latest)
