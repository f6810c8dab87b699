"""Run configuration, timeout defaults, and the cluster registry."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Literal

import structlog
import yaml

from cluster_upgrade.errors import ConfigurationError
from cluster_upgrade.models import CONTROL_PLANE_POOL_NAME, ClusterModel

log = structlog.get_logger()

DrainTimeoutPolicy = Literal["fail", "proceed"]

AZURE_STACK_CORDON_DRAIN_TIMEOUT = timedelta(minutes=60)


@dataclass(frozen=True)
class ClusterConfig:
    """Registry entry for one cluster the upgrader may operate on."""

    cluster_id: str
    subscription_id: str
    resource_group: str
    location: str
    api_model_path: str
    kubeconfig_path: str | None = None


@dataclass(frozen=True)
class DefaultTimeouts:
    """Timeout defaults with environment variable overrides."""

    step_timeout_minutes: int = field(
        default_factory=lambda: int(os.environ.get("UPGRADE_STEP_TIMEOUT_MINUTES", "20"))
    )
    cordon_drain_timeout_minutes: int = field(
        default_factory=lambda: int(os.environ.get("UPGRADE_CORDON_DRAIN_TIMEOUT_MINUTES", "20"))
    )
    readiness_poll_seconds: float = field(
        default_factory=lambda: float(os.environ.get("UPGRADE_READINESS_POLL_SECONDS", "10"))
    )

    @property
    def step_timeout(self) -> timedelta:
        return timedelta(minutes=self.step_timeout_minutes)

    @property
    def cordon_drain_timeout(self) -> timedelta:
        return timedelta(minutes=self.cordon_drain_timeout_minutes)


def get_default_timeouts() -> DefaultTimeouts:
    """Return timeout defaults with environment variable overrides applied."""
    return DefaultTimeouts()


@dataclass(frozen=True)
class RunConfig:
    """Immutable inputs for one upgrade run.

    ``step_timeout`` and ``cordon_drain_timeout`` are None when the caller did not
    choose one; effective values are resolved against DefaultTimeouts by the
    orchestrator. ``agent_pools`` is None to upgrade every pool.
    """

    resource_group: str
    location: str
    upgrade_version: str
    force: bool = False
    control_plane_only: bool = False
    agent_pools: frozenset[str] | None = None
    step_timeout: timedelta | None = None
    cordon_drain_timeout: timedelta | None = None
    drain_timeout_policy: DrainTimeoutPolicy | None = None
    max_unavailable: int = 1
    upgrade_windows_vhd: bool = True
    supported_upgrades: tuple[str, ...] | None = None

    @property
    def effective_drain_timeout_policy(self) -> DrainTimeoutPolicy:
        """The explicit policy, else ``proceed`` for forced runs and ``fail`` otherwise."""
        if self.drain_timeout_policy is not None:
            return self.drain_timeout_policy
        return "proceed" if self.force else "fail"


def normalize_azure_region(location: str) -> str:
    """Normalise a region name the way Azure does: lowercase with spaces removed."""
    return location.replace(" ", "").lower()


def _minutes(value: int | None, flag: str) -> timedelta | None:
    if value is None or value == -1:
        return None
    if value <= 0:
        msg = f"{flag} must be a positive number of minutes, got {value}"
        raise ConfigurationError(msg, stage="configuration")
    return timedelta(minutes=value)


def build_run_config(
    *,
    resource_group: str,
    location: str,
    upgrade_version: str,
    force: bool = False,
    control_plane_only: bool = False,
    agent_pools: list[str] | None = None,
    vm_timeout_minutes: int | None = None,
    cordon_drain_timeout_minutes: int | None = None,
    drain_timeout_policy: DrainTimeoutPolicy | None = None,
    max_unavailable: int = 1,
    upgrade_windows_vhd: bool = True,
    supported_upgrades: list[str] | None = None,
) -> RunConfig:
    """Validate raw inputs and build a RunConfig.

    A timeout of None or -1 means "use the default".

    Raises:
        ConfigurationError: If a required input is missing or inputs contradict.
    """
    if not resource_group:
        raise ConfigurationError("resource group must be specified", stage="configuration")
    if not location:
        raise ConfigurationError("location must be specified", stage="configuration")
    if not upgrade_version:
        raise ConfigurationError("upgrade version must be specified", stage="configuration")
    if control_plane_only and agent_pools:
        msg = "agent pools cannot be selected when upgrading the control plane only"
        raise ConfigurationError(msg, stage="configuration")
    if max_unavailable < 1:
        msg = f"max unavailable must be at least 1, got {max_unavailable}"
        raise ConfigurationError(msg, stage="configuration")
    if drain_timeout_policy not in (None, "fail", "proceed"):
        msg = f"Invalid drain timeout policy: {drain_timeout_policy!r}. Must be one of: fail, proceed"
        raise ConfigurationError(msg, stage="configuration")

    return RunConfig(
        resource_group=resource_group,
        location=normalize_azure_region(location),
        upgrade_version=upgrade_version,
        force=force,
        control_plane_only=control_plane_only,
        agent_pools=frozenset(agent_pools) if agent_pools else None,
        step_timeout=_minutes(vm_timeout_minutes, "vm timeout"),
        cordon_drain_timeout=_minutes(cordon_drain_timeout_minutes, "cordon drain timeout"),
        drain_timeout_policy=drain_timeout_policy,
        max_unavailable=max_unavailable,
        upgrade_windows_vhd=upgrade_windows_vhd,
        supported_upgrades=tuple(supported_upgrades) if supported_upgrades is not None else None,
    )


def resolve_pool_selection(config: RunConfig, model: ClusterModel) -> frozenset[str]:
    """Return the names of the pools eligible for upgrade in this run.

    * control plane only: just the control-plane pool.
    * explicit pool list: the listed pools; the control plane only if listed.
    * otherwise: the control-plane pool and every agent pool.

    Raises:
        ConfigurationError: If an explicitly listed pool is not in the model.
    """
    if config.control_plane_only:
        return frozenset({CONTROL_PLANE_POOL_NAME})

    known = {pool.name for pool in model.properties.agent_pool_profiles}
    if config.agent_pools is None:
        return frozenset({CONTROL_PLANE_POOL_NAME, *known})

    unknown = sorted(p for p in config.agent_pools if p != CONTROL_PLANE_POOL_NAME and p not in known)
    if unknown:
        valid = ", ".join(sorted(known))
        msg = f"Unknown agent pools: {', '.join(unknown)}. Valid pools: {valid}"
        raise ConfigurationError(msg, stage="configuration")
    return frozenset(config.agent_pools)


# --- Cluster registry ---


_REGISTRY_KEYS = ("subscription_id", "resource_group", "location", "api_model_path")
_SUBSCRIPTION_RE = re.compile(r"^[0-9a-f]{8}(?:-[0-9a-f]{4}){3}-[0-9a-f]{12}$", re.IGNORECASE)

CLUSTER_MAP: dict[str, ClusterConfig] = {}


def _registry_entry(cluster_id: str, entry: Any) -> ClusterConfig:
    if not isinstance(entry, dict):
        raise ValueError(f"registry entry {cluster_id!r} should be a mapping of settings, not {type(entry).__name__}")
    absent = [key for key in _REGISTRY_KEYS if key not in entry]
    if absent:
        raise ValueError(f"registry entry {cluster_id!r} lacks {', '.join(absent)}")
    kubeconfig = entry.get("kubeconfig_path")
    return ClusterConfig(
        cluster_id=cluster_id,
        kubeconfig_path=str(kubeconfig) if kubeconfig else None,
        **{key: str(entry[key]) for key in _REGISTRY_KEYS},
    )


def read_cluster_registry(path: Path) -> dict[str, ClusterConfig]:
    """Read the clusters an operator may upgrade from a YAML registry.

    The file holds a ``clusters`` mapping keyed by cluster id; each entry names
    the subscription, resource group, location and api model file, and optionally
    a kubeconfig.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the registry is not shaped as described.
    """
    if not path.exists():
        raise FileNotFoundError(
            f"no cluster registry at {path}; start from clusters.example.yaml or point UPGRADE_CLUSTERS elsewhere"
        )
    document = yaml.safe_load(path.read_text())
    clusters = document.get("clusters") if isinstance(document, dict) else None
    if not isinstance(clusters, dict) or not clusters:
        raise ValueError(f"{path} defines no clusters under a top-level 'clusters' mapping")
    return {cluster_id: _registry_entry(cluster_id, entry) for cluster_id, entry in clusters.items()}


def load_cluster_map() -> dict[str, ClusterConfig]:
    """Replace CLUSTER_MAP with the registry named by UPGRADE_CLUSTERS (default ``clusters.yaml``)."""
    registry = read_cluster_registry(Path(os.environ.get("UPGRADE_CLUSTERS", "clusters.yaml")))
    CLUSTER_MAP.clear()
    CLUSTER_MAP.update(registry)
    log.info("cluster_registry_loaded", clusters=sorted(registry))
    return CLUSTER_MAP


def resolve_cluster(cluster_id: str) -> ClusterConfig:
    """Look up a registered cluster.

    Raises:
        ConfigurationError: If ``cluster_id`` is not registered.
    """
    try:
        return CLUSTER_MAP[cluster_id]
    except KeyError:
        known = ", ".join(sorted(CLUSTER_MAP))
        msg = f"Unknown cluster '{cluster_id}'. Valid clusters: {known}"
        raise ConfigurationError(msg, stage="configuration") from None


def validate_cluster_config() -> None:
    """Check the loaded registry before serving: real subscription ids and no blank settings.

    Raises:
        RuntimeError: Listing every problem found.
    """
    problems: list[str] = []
    for cluster_id, cluster in CLUSTER_MAP.items():
        if not _SUBSCRIPTION_RE.match(cluster.subscription_id):
            problems.append(f"{cluster_id} has subscription_id {cluster.subscription_id!r}, expected a GUID")
        problems.extend(
            f"{cluster_id} has a blank {key}" for key in _REGISTRY_KEYS[1:] if not getattr(cluster, key)
        )
    if problems:
        raise RuntimeError("cluster registry cannot be used: " + "; ".join(problems))
