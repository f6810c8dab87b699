"""Node naming conventions: the single source of truth for matching resources to pools.

Every rule that decides which pool a cloud resource belongs to lives here, as pure
string functions. Topology discovery calls into this module and never parses names
itself.

Conventions (``<suffix>`` is the cluster's 8 hex character name suffix):

* control plane VM:           ``k8s-master-<suffix>-<index>``
* Linux discrete agent VM:    ``k8s-<pool>-<suffix>-<index>``
* scale set:                  ``k8s-<pool>-<suffix>-vmss``
* scale set instance:         ``k8s-<pool>-<suffix>-vmss<6 digit index>``
* Windows discrete agent VM:  ``<suffix[:4]>k8s<2 digit pool index><index>``
  (legacy: ``<suffix[:5]>k8s9<2 digit pool index><index>``)
* Windows scale set instance: ``<4 digits>k8s0...`` (4 digit prefix, platform
  marker, zero padding)
"""

from __future__ import annotations

import re
from typing import NamedTuple

from cluster_upgrade.models import CONTROL_PLANE_POOL_NAME, AgentPoolProfile

ORCHESTRATOR_PREFIX = "k8s"
CONTROL_PLANE_VM_PREFIX = f"{ORCHESTRATOR_PREFIX}-{CONTROL_PLANE_POOL_NAME}-"
VMSS_INSTANCE_INDEX_WIDTH = 6

_WINDOWS_VMSS_INSTANCE_RE = re.compile(r"^[0-9]{4}k8s[0]+")
_VMSS_NAME_RE = re.compile(r"^([0-9a-zA-Z]+)-(.+)-([0-9a-fA-F]{8})-vmss([0-9]*)$")
_LINUX_VM_RE = re.compile(r"^([0-9a-zA-Z]{3})-(.+)-([0-9a-fA-F]{8})-{0,2}([0-9]+)$")
_WINDOWS_VM_RE = re.compile(r"^([a-fA-F0-9]{4})([0-9a-zA-Z]{3})([0-9]{3,8})$")
_WINDOWS_LEGACY_VM_RE = re.compile(r"^([a-fA-F0-9]{5})([0-9a-zA-Z]{3})([9])([a-zA-Z0-9]{3,5})$")


class VmssNameParts(NamedTuple):
    orchestrator: str
    pool_name: str
    name_suffix: str
    instance_index: int | None


class LinuxVMNameParts(NamedTuple):
    pool_name: str
    name_suffix: str
    index: int


class WindowsVMNameParts(NamedTuple):
    prefix: str
    pool_identifier: str
    pool_index: int
    index: int


def parse_vmss_name(name: str) -> VmssNameParts | None:
    """Split a scale set or scale set instance name into its components.

    Returns None when ``name`` does not follow the structured scale set convention.
    """
    match = _VMSS_NAME_RE.match(name)
    if not match:
        return None
    instance = match.group(4)
    return VmssNameParts(
        orchestrator=match.group(1),
        pool_name=match.group(2),
        name_suffix=match.group(3),
        instance_index=int(instance) if instance else None,
    )


def format_vmss_name(pool_name: str, name_suffix: str, instance_index: int | None = None) -> str:
    """Build a scale set name, or an instance name when ``instance_index`` is given.

    Inverse of parse_vmss_name for names this module produces.
    """
    base = f"{ORCHESTRATOR_PREFIX}-{pool_name}-{name_suffix}-vmss"
    if instance_index is None:
        return base
    return f"{base}{instance_index:0{VMSS_INSTANCE_INDEX_WIDTH}d}"


def parse_linux_vm_name(name: str) -> LinuxVMNameParts | None:
    """Parse a discrete Linux VM name (control plane or agent)."""
    match = _LINUX_VM_RE.match(name)
    if not match:
        return None
    return LinuxVMNameParts(pool_name=match.group(2), name_suffix=match.group(3), index=int(match.group(4)))


def format_linux_vm_name(pool_name: str, name_suffix: str, index: int) -> str:
    return f"{ORCHESTRATOR_PREFIX}-{pool_name}-{name_suffix}-{index}"


def parse_windows_vm_name(name: str) -> WindowsVMNameParts | None:
    """Parse a discrete Windows VM name in either the current or the legacy format.

    The pool identifier is the first 9 characters (current format) or the first 11
    characters (legacy format, recognised by the ``9`` at position 8).
    """
    match = _WINDOWS_LEGACY_VM_RE.match(name)
    if match and name[8] == "9":
        rest = match.group(4)
        return WindowsVMNameParts(
            prefix=match.group(1),
            pool_identifier=name[:11],
            pool_index=int(rest[:2]) if rest[:2].isdigit() else -1,
            index=int(rest[2:]) if rest[2:].isdigit() else -1,
        )
    match = _WINDOWS_VM_RE.match(name)
    if match:
        digits = match.group(3)
        return WindowsVMNameParts(
            prefix=match.group(1),
            pool_identifier=name[:9],
            pool_index=int(digits[:2]),
            index=int(digits[2:]),
        )
    return None


def format_windows_vm_name(name_suffix: str, pool_index: int, index: int) -> str:
    return f"{name_suffix[:4]}{ORCHESTRATOR_PREFIX}{pool_index:02d}{index}"


def is_windows_vmss_instance(name: str) -> bool:
    """Windows scale set instances start with 4 digits, ``k8s`` and zero padding."""
    return _WINDOWS_VMSS_INSTANCE_RE.match(name) is not None


def is_control_plane_vm(name: str) -> bool:
    return name.startswith(CONTROL_PLANE_VM_PREFIX)


def control_plane_index(name: str) -> int | None:
    """Return the index of a control plane VM, or None when ``name`` is not one."""
    if not is_control_plane_vm(name):
        return None
    parts = parse_linux_vm_name(name)
    if parts is None or parts.pool_name != CONTROL_PLANE_POOL_NAME:
        return None
    return parts.index


def control_plane_vm_name(name_suffix: str, index: int) -> str:
    return format_linux_vm_name(CONTROL_PLANE_POOL_NAME, name_suffix, index)


def belongs_to_cluster(name: str, name_suffix: str) -> bool:
    """Return True if ``name`` carries this cluster's name suffix.

    Windows names only embed the first 4 (or, in the legacy format, 5) characters
    of the suffix, directly followed by the ``k8s`` marker.
    """
    if not name_suffix:
        return False
    if name_suffix in name:
        return True
    return f"{name_suffix[:4]}{ORCHESTRATOR_PREFIX}" in name or f"{name_suffix[:5]}{ORCHESTRATOR_PREFIX}" in name


def matches_pool(
    resource_name: str,
    pool: AgentPoolProfile,
    *,
    name_suffix: str = "",
    pool_index: int | None = None,
) -> bool:
    """Return True if ``resource_name`` names a resource of ``pool``.

    Scale set pools parse the structured name and compare the pool segment;
    Windows scale set pools accept the Windows instance pattern. Discrete VM pools
    match the pool's generated VM name prefix. When ``name_suffix`` is given the
    suffix embedded in the name must match it; when ``pool_index`` is given Windows
    discrete names must carry that pool index.
    """
    if pool.is_vmss:
        if pool.is_windows:
            if not is_windows_vmss_instance(resource_name):
                return False
            return not name_suffix or resource_name.startswith(name_suffix[:4])
        parts = parse_vmss_name(resource_name)
        if parts is None or parts.pool_name != pool.name:
            return False
        return not name_suffix or parts.name_suffix.lower() == name_suffix.lower()

    if pool.is_windows:
        windows_parts = parse_windows_vm_name(resource_name)
        if windows_parts is None:
            return False
        if name_suffix and not name_suffix.lower().startswith(windows_parts.prefix.lower()):
            return False
        return pool_index is None or windows_parts.pool_index == pool_index

    linux_parts = parse_linux_vm_name(resource_name)
    if linux_parts is None or linux_parts.pool_name != pool.name:
        return False
    if "vmss" in resource_name.rsplit("-", 1)[-1]:
        return False
    return not name_suffix or linux_parts.name_suffix.lower() == name_suffix.lower()
