"""Topology discovery: attribute the resource group's compute resources to pools."""

from __future__ import annotations

import structlog

from cluster_upgrade.clients import CloudResourceClient
from cluster_upgrade.errors import CloudAPIError, TopologyIncomplete, UpgradeError
from cluster_upgrade.models import (
    CONTROL_PLANE_POOL_NAME,
    POOL_NAME_TAG,
    AgentPoolProfile,
    ClusterModel,
    DiscoveredNode,
    NodeRole,
    ResourceDescriptor,
    Topology,
)
from cluster_upgrade.naming import (
    belongs_to_cluster,
    control_plane_index,
    is_control_plane_vm,
    matches_pool,
    parse_linux_vm_name,
    parse_vmss_name,
    parse_windows_vm_name,
)

log = structlog.get_logger()


async def discover_topology(
    cloud: CloudResourceClient,
    resource_group: str,
    name_suffix: str,
    model: ClusterModel,
) -> Topology:
    """List the resource group and build a fresh pool -> nodes snapshot.

    Resources without the cluster's name suffix belong to another cluster sharing
    the resource group and are skipped. Workers matching no pool are logged and
    recorded in ``Topology.unmatched``.

    Raises:
        CloudAPIError: If the resources cannot be listed.
        TopologyIncomplete: If a control-plane resource cannot be resolved.
    """
    try:
        resources = await cloud.list_compute_resources(resource_group)
    except UpgradeError:
        raise
    except Exception as exc:
        msg = f"failed to list compute resources in resource group {resource_group}: {exc}"
        raise CloudAPIError(msg, stage="topology") from exc

    pools: dict[str, list[DiscoveredNode]] = {CONTROL_PLANE_POOL_NAME: []}
    for pool in model.properties.agent_pool_profiles:
        pools[pool.name] = []
    topology = Topology(pools=pools)

    for resource in sorted(resources, key=lambda r: r.name):
        if not belongs_to_cluster(resource.name, name_suffix):
            log.info("skipping_resource_other_cluster", resource=resource.name, name_suffix=name_suffix)
            continue

        if _is_control_plane_resource(resource):
            topology.pools[CONTROL_PLANE_POOL_NAME].append(_control_plane_node(resource))
            continue

        pool = _attribute_worker(resource, model, name_suffix)
        if pool is None:
            log.warning("unmatched_worker_resource", resource=resource.name)
            topology.unmatched.append(resource.name)
            continue
        topology.pools[pool.name].append(
            DiscoveredNode(
                resource=resource,
                pool_name=pool.name,
                role=NodeRole.WORKER,
                index=_worker_index(resource),
                current_version=resource.orchestrator_version,
            )
        )

    for nodes in topology.pools.values():
        nodes.sort(key=lambda n: (n.index is None, n.index or 0, n.resource.name))

    log.info(
        "topology_discovered",
        resource_group=resource_group,
        pools={name: len(nodes) for name, nodes in topology.pools.items()},
        unmatched=len(topology.unmatched),
    )
    return topology


def _is_control_plane_resource(resource: ResourceDescriptor) -> bool:
    return is_control_plane_vm(resource.name) or resource.tags.get(POOL_NAME_TAG) == CONTROL_PLANE_POOL_NAME


def _control_plane_node(resource: ResourceDescriptor) -> DiscoveredNode:
    index = control_plane_index(resource.name)
    if resource.kind != "vm" or index is None:
        msg = f"control plane resource {resource.name} does not follow the control plane naming convention"
        raise TopologyIncomplete(msg, stage="topology", pool=CONTROL_PLANE_POOL_NAME, node=resource.name)
    return DiscoveredNode(
        resource=resource,
        pool_name=CONTROL_PLANE_POOL_NAME,
        role=NodeRole.CONTROL_PLANE,
        index=index,
        current_version=resource.orchestrator_version,
    )


def _attribute_worker(
    resource: ResourceDescriptor, model: ClusterModel, name_suffix: str
) -> AgentPoolProfile | None:
    """Pick the pool for a worker resource: a valid poolName tag first, else the name."""
    is_instance = resource.kind == "vmss_instance"
    tagged = model.properties.pool(resource.tags.get(POOL_NAME_TAG, ""))
    if tagged is not None and tagged.is_vmss == is_instance:
        return tagged

    # Scale set instances only match scale set pools and discrete VMs only match
    # discrete pools: a Windows scale set instance name also parses as a Windows VM.
    candidates = [
        pool
        for i, pool in enumerate(model.properties.agent_pool_profiles)
        if pool.is_vmss == is_instance
        and matches_pool(
            resource.name,
            pool,
            name_suffix=name_suffix,
            pool_index=i if pool.is_windows and not pool.is_vmss else None,
        )
    ]
    if len(candidates) > 1:
        log.warning(
            "ambiguous_pool_match",
            resource=resource.name,
            pools=[p.name for p in candidates],
        )
        return None
    return candidates[0] if candidates else None


def _worker_index(resource: ResourceDescriptor) -> int | None:
    if resource.kind == "vmss_instance":
        if resource.instance_id and resource.instance_id.isdigit():
            return int(resource.instance_id)
        parts = parse_vmss_name(resource.name)
        return parts.instance_index if parts else None
    if resource.os_type == "Windows":
        windows_parts = parse_windows_vm_name(resource.name)
        return windows_parts.index if windows_parts else None
    linux_parts = parse_linux_vm_name(resource.name)
    return linux_parts.index if linux_parts else None
