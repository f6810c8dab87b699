"""Pydantic v2 models for the cluster api model, topology, upgrade plan and reports."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CONTROL_PLANE_POOL_NAME = "master"
ORCHESTRATOR_TAG = "orchestrator"
POOL_NAME_TAG = "poolName"
NAME_SUFFIX_TAG = "resourceNameSuffix"

AvailabilityProfile = Literal["AvailabilitySet", "VirtualMachineScaleSets"]
OSType = Literal["Linux", "Windows"]


# --- Cluster api model ---


# Note 1: The api model file is written by other tooling and carries far more keys
# than the upgrader reads. `extra="allow"` keeps every unknown key on the model so that
# load -> save writes them back untouched. `alias_generator=to_camel` maps the
# snake_case attribute names onto the camelCase keys used in the file, and
# `populate_by_name=True` lets tests and code construct models with either spelling.
class _ApiModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)


class ImageReference(_ApiModel):
    """Marketplace or gallery image a VM boots from."""

    publisher: str | None = None
    offer: str | None = None
    sku: str | None = None
    version: str | None = None
    name: str | None = None
    resource_group: str | None = None
    gallery: str | None = None
    subscription_id: str | None = None

    def describe(self) -> str:
        if self.name:
            return f"{self.resource_group or ''}/{self.gallery or ''}/{self.name}:{self.version or 'latest'}"
        return f"{self.publisher}:{self.offer}:{self.sku}:{self.version or 'latest'}"

    def same_image(self, other: ImageReference | None) -> bool:
        """Compare image identity. The subscription is ignored since profiles usually omit it."""
        if other is None:
            return False
        fields = ("publisher", "offer", "sku", "version", "name", "resource_group", "gallery")
        return all(
            (getattr(self, f) or "").lower() == (getattr(other, f) or "").lower() for f in fields
        )


class KubernetesComponent(_ApiModel):
    name: str
    enabled: bool | None = None

    def is_enabled(self) -> bool:
        return bool(self.enabled)


class KubernetesConfig(_ApiModel):
    components: list[KubernetesComponent] = Field(default_factory=list)
    container_runtime: str | None = None
    use_cloud_controller_manager: bool | None = None
    use_managed_identity: bool | None = None
    user_assigned_id: str | None = Field(default=None, alias="userAssignedID")
    enable_encryption_with_external_kms: bool | None = None

    def component_index(self, name: str) -> int:
        """Return the index of the named component, or -1 when absent."""
        for i, component in enumerate(self.components):
            if component.name == name:
                return i
        return -1


class OrchestratorProfile(_ApiModel):
    orchestrator_type: str = "Kubernetes"
    orchestrator_version: str
    kubernetes_config: KubernetesConfig | None = None


class MasterProfile(_ApiModel):
    count: int = 1
    dns_prefix: str | None = None
    vm_size: str | None = None
    distro: str | None = None
    availability_profile: AvailabilityProfile = "AvailabilitySet"
    image_reference: ImageReference | None = None


class AgentPoolProfile(_ApiModel):
    name: str
    count: int = 1
    vm_size: str | None = None
    os_type: OSType = "Linux"
    availability_profile: AvailabilityProfile = "VirtualMachineScaleSets"
    distro: str | None = None
    image_reference: ImageReference | None = None
    orchestrator_version: str | None = None

    @property
    def is_windows(self) -> bool:
        return self.os_type == "Windows"

    @property
    def is_vmss(self) -> bool:
        return self.availability_profile == "VirtualMachineScaleSets"


class WindowsProfile(_ApiModel):
    windows_publisher: str | None = None
    windows_offer: str | None = None
    windows_sku: str | None = None
    image_version: str | None = None


class ClusterProperties(_ApiModel):
    cluster_id: str | None = Field(default=None, alias="clusterID")
    orchestrator_profile: OrchestratorProfile
    master_profile: MasterProfile
    agent_pool_profiles: list[AgentPoolProfile] = Field(default_factory=list)
    windows_profile: WindowsProfile | None = None
    custom_cloud_profile: dict[str, Any] | None = None

    def has_windows(self) -> bool:
        return any(pool.is_windows for pool in self.agent_pool_profiles)

    def is_azure_stack_cloud(self) -> bool:
        return self.custom_cloud_profile is not None

    def pool(self, name: str) -> AgentPoolProfile | None:
        for pool in self.agent_pool_profiles:
            if pool.name == name:
                return pool
        return None


class ClusterModel(_ApiModel):
    """The declarative cluster description loaded from the api model file."""

    api_version: str | None = None
    location: str = ""
    properties: ClusterProperties

    @property
    def current_version(self) -> str:
        return self.properties.orchestrator_profile.orchestrator_version

    @property
    def name_suffix(self) -> str:
        return self.properties.cluster_id or ""


class CloudEndpoints(BaseModel):
    """Resource Manager and identity endpoints of a custom (Azure Stack) cloud."""

    name: str = "AzureStackCloud"
    resource_manager: str
    authority: str | None = None
    token_audience: str | None = None

    @property
    def credential_scope(self) -> str:
        return f"{(self.token_audience or self.resource_manager).rstrip('/')}/.default"


# --- Cloud resources ---


_ORCHESTRATOR_TAG_RE = re.compile(r"^[A-Za-z]+:(?P<version>.+)$")


class ResourceDescriptor(BaseModel):
    """A compute resource as reported by the cloud."""

    id: str
    name: str
    kind: Literal["vm", "vmss_instance"] = "vm"
    resource_group: str = ""
    location: str = ""
    os_type: OSType = "Linux"
    scale_set_name: str | None = None
    instance_id: str | None = None
    computer_name: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    image_reference: ImageReference | None = None
    provisioning_state: str | None = None
    snapshot: dict[str, Any] = Field(default_factory=dict)

    @property
    def node_name(self) -> str:
        """The Kubernetes node name: the lowercased computer name, else the resource name."""
        return (self.computer_name or self.name).lower()

    @property
    def orchestrator_version(self) -> str | None:
        """Version recorded in the ``orchestrator`` tag, e.g. ``Kubernetes:1.23.5``."""
        tag = self.tags.get(ORCHESTRATOR_TAG)
        if not tag:
            return None
        match = _ORCHESTRATOR_TAG_RE.match(tag)
        return match.group("version") if match else None


class ComputeResourceSpec(BaseModel):
    """Request to create a compute resource in place of a decommissioned one."""

    name: str
    resource_group: str
    location: str
    kind: Literal["vm", "vmss_instance"] = "vm"
    pool_name: str
    index: int | None = None
    os_type: OSType = "Linux"
    scale_set_name: str | None = None
    image_reference: ImageReference | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    snapshot: dict[str, Any] = Field(default_factory=dict)


# --- Topology and plan ---


class NodeRole(StrEnum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


# Note 2: An Enum is used for node state rather than a Literal because the state
# machine needs ordering: NODE_STATE_ORDER gives each non-terminal state a rank, and
# a transition is legal only when it moves to a higher rank or to FAILED.
class NodeState(StrEnum):
    PENDING = "pending"
    CORDONED = "cordoned"
    DRAINED = "drained"
    DECOMMISSIONED = "decommissioned"
    RECREATED = "recreated"
    VALIDATED = "validated"
    COMPLETED = "completed"
    FAILED = "failed"


NODE_STATE_ORDER: tuple[NodeState, ...] = (
    NodeState.PENDING,
    NodeState.CORDONED,
    NodeState.DRAINED,
    NodeState.DECOMMISSIONED,
    NodeState.RECREATED,
    NodeState.VALIDATED,
    NodeState.COMPLETED,
)
TERMINAL_STATES = frozenset({NodeState.COMPLETED, NodeState.FAILED})


class DiscoveredNode(BaseModel):
    """A resource attributed to a pool during topology discovery."""

    resource: ResourceDescriptor
    pool_name: str
    role: NodeRole
    index: int | None = None
    current_version: str | None = None


class Topology(BaseModel):
    """Snapshot of the deployed fleet, keyed by logical pool name."""

    pools: dict[str, list[DiscoveredNode]] = Field(default_factory=dict)
    unmatched: list[str] = Field(default_factory=list)

    def nodes(self, pool_name: str) -> list[DiscoveredNode]:
        return self.pools.get(pool_name, [])

    @property
    def control_plane(self) -> list[DiscoveredNode]:
        return self.nodes(CONTROL_PLANE_POOL_NAME)


class UpgradeTarget(BaseModel):
    """One node of one pool and the configuration it should end up with."""

    pool_name: str
    role: NodeRole
    node_name: str
    index: int | None = None
    resource: ResourceDescriptor | None = None
    current_version: str | None = None
    desired_version: str
    desired_image: ImageReference | None = None
    state: NodeState = NodeState.PENDING
    last_state: NodeState | None = None
    failed_step: NodeState | None = None
    error: str | None = None
    replacement: ResourceDescriptor | None = None


class PoolPlan(BaseModel):
    pool_name: str
    role: NodeRole
    availability_profile: AvailabilityProfile
    max_unavailable: int = 1
    targets: list[UpgradeTarget] = Field(default_factory=list)


class UpgradePlan(BaseModel):
    """The ordered, inspectable sequence of pools and nodes a run will upgrade."""

    resource_group: str
    current_version: str
    target_version: str
    force: bool = False
    pools: list[PoolPlan] = Field(default_factory=list)

    def targets(self) -> list[UpgradeTarget]:
        return [t for pool in self.pools for t in pool.targets]

    def describe(self) -> list[dict[str, Any]]:
        """Flatten the plan into log-friendly rows."""
        return [
            {
                "pool": pool.pool_name,
                "role": pool.role.value,
                "node": target.node_name,
                "state": target.state.value,
                "current_version": target.current_version,
            }
            for pool in self.pools
            for target in pool.targets
        ]


class NodeTransition(BaseModel):
    pool_name: str
    node_name: str
    from_state: NodeState
    to_state: NodeState
    timestamp: str


class UpgradeReport(BaseModel):
    """Outcome of an orchestrator run."""

    success: bool
    resource_group: str
    current_version: str
    target_version: str
    nodes_total: int
    nodes_upgraded: int
    nodes_skipped: int
    nodes_failed: int
    failure: str | None = None
    summary: str
    timestamp: str
    nodes: list[UpgradeTarget] = Field(default_factory=list)


# --- Invocation surface ---


class UpgradeRequest(BaseModel):
    """Input parameters for the upgrade tools."""

    cluster: str
    upgrade_version: str
    force: bool = False
    control_plane_only: bool = False
    agent_pools: list[str] | None = None
    vm_timeout_minutes: int | None = Field(default=None, ge=1, le=1440)
    cordon_drain_timeout_minutes: int | None = Field(default=None, ge=1, le=1440)
    drain_timeout_policy: Literal["fail", "proceed"] | None = None
    max_unavailable: int = Field(default=1, ge=1, le=100)
    upgrade_windows_vhd: bool = True


class ToolError(BaseModel):
    """Structured error returned by the tools."""

    error: str
    stage: str
    cluster: str
    pool: str | None = None
    node: str | None = None
    step: str | None = None


# --- Output scrubbing ---

_IP_PATTERN = re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b")
_SUBSCRIPTION_PATTERN = re.compile(r"/subscriptions/[a-f0-9-]+", re.IGNORECASE)
_RESOURCE_GROUP_PATTERN = re.compile(r"/resourceGroups/[^/]+", re.IGNORECASE)
_AZURE_HOST_PATTERN = re.compile(
    r"\b[\w.-]+\.(vault\.azure\.net|blob\.core\.windows\.net|cloudapp\.azure\.com)\b", re.IGNORECASE
)


def scrub_sensitive_values(text: str) -> str:
    """Remove internal IPs, subscription IDs, resource group paths and Azure hostnames from text.

    VM and node names (e.g., k8s-master-38912981-0) are preserved.
    """
    if not text:
        return text
    result = _IP_PATTERN.sub("[REDACTED_IP]", text)
    result = _RESOURCE_GROUP_PATTERN.sub("/resourceGroups/[REDACTED]", result)
    result = _SUBSCRIPTION_PATTERN.sub("/subscriptions/[REDACTED]", result)
    result = _AZURE_HOST_PATTERN.sub("[REDACTED_HOST]", result)
    return result
