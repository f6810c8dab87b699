"""Version compatibility validation for orchestrator upgrades."""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import NamedTuple

import structlog

from cluster_upgrade.errors import InvalidVersionFormat, UnsupportedUpgradePath

log = structlog.get_logger()

# Note 1: MAJOR.MINOR.PATCH with an optional pre-release after a hyphen and optional
# build metadata after a plus sign. Numeric components may not carry leading zeros.
_SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

# Versions the upgrader knows how to install. get_supported_upgrades() filters this
# catalogue down to the transitions allowed from a given current version.
KNOWN_ORCHESTRATOR_VERSIONS = (
    "1.21.14",
    "1.22.15",
    "1.22.17",
    "1.23.5",
    "1.23.6",
    "1.23.12",
    "1.23.15",
    "1.24.0",
    "1.24.7",
    "1.24.9",
    "1.25.5",
    "1.25.6",
)


class SemVer(NamedTuple):
    """A parsed semantic version. Tuple ordering compares major, minor, patch."""

    major: int
    minor: int
    patch: int
    prerelease: str = ""

    def sort_key(self) -> tuple[int, int, int, int, str]:
        # A release sorts after any of its pre-releases.
        return (self.major, self.minor, self.patch, 0 if self.prerelease else 1, self.prerelease)

    def __str__(self) -> str:
        base = f"{self.major}.{self.minor}.{self.patch}"
        return f"{base}-{self.prerelease}" if self.prerelease else base


def parse_version(version: str) -> SemVer:
    """Parse a semantic version string.

    Raises:
        InvalidVersionFormat: If ``version`` is not a semver string.
    """
    match = _SEMVER_RE.match(version or "")
    if not match:
        msg = f"Invalid upgrade version value {version!r}, not a semver string"
        raise InvalidVersionFormat(msg, stage="validation")
    return SemVer(int(match.group(1)), int(match.group(2)), int(match.group(3)), match.group(4) or "")


def is_valid_version(version: str) -> bool:
    """Return True if ``version`` is a semantic version string."""
    return bool(_SEMVER_RE.match(version or ""))


def is_version_less(left: str, right: str) -> bool:
    """Return True if ``left`` sorts strictly before ``right``."""
    return parse_version(left).sort_key() < parse_version(right).sort_key()


def is_upgrade_allowed(
    current: str,
    target: str,
    supported_upgrades: Iterable[str],
    force: bool = False,
) -> None:
    """Validate a version transition.

    Args:
        current: The version the cluster runs today.
        target: The requested version.
        supported_upgrades: Versions ``current`` is known to upgrade to.
        force: Skip the supported-path check entirely. Same-version and
            downgrade transitions are accepted when forced.

    Raises:
        InvalidVersionFormat: If ``target`` is not a semver string, forced or not.
        UnsupportedUpgradePath: If not forced and ``target`` is not supported.
    """
    parse_version(target)
    if force:
        log.info("upgrade_path_check_skipped", current=current, target=target)
        return
    if target not in set(supported_upgrades):
        msg = (
            f"Upgrading from Kubernetes version {current} to version {target} is not supported. "
            "Consider using force if you really want to proceed"
        )
        raise UnsupportedUpgradePath(msg, stage="validation")


def get_supported_upgrades(current: str, available_versions: Iterable[str] = KNOWN_ORCHESTRATOR_VERSIONS) -> list[str]:
    """Return the versions ``current`` may upgrade to, oldest first.

    A supported upgrade is any newer version with the same major version and a
    minor version at most one ahead of ``current``. Pre-release builds are never
    offered unless ``current`` is itself a pre-release of the same release line.

    Raises:
        InvalidVersionFormat: If ``current`` is not a semver string.
    """
    if not is_valid_version(current):
        msg = f"Invalid current version value {current!r} in the api model, not a semver string"
        raise InvalidVersionFormat(msg, stage="validation")
    base = parse_version(current)
    upgrades: list[SemVer] = []
    for candidate in available_versions:
        if not is_valid_version(candidate):
            log.warning("skipping_invalid_catalogue_version", version=candidate)
            continue
        parsed = parse_version(candidate)
        if parsed.major != base.major or parsed.minor > base.minor + 1:
            continue
        if parsed.sort_key() <= base.sort_key():
            continue
        if parsed.prerelease and not base.prerelease:
            continue
        upgrades.append(parsed)
    return [str(v) for v in sorted(upgrades, key=SemVer.sort_key)]
