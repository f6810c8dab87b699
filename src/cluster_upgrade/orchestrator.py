"""Rolling upgrade orchestrator: plan the run, then sequence pools and nodes.

The control-plane pool is upgraded first, one node at a time, and must finish
before any worker pool starts. Worker pools follow in their declared order, each
capped at ``max_unavailable`` nodes in flight. The first node failure halts the
pool and the run.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from cluster_upgrade.clients import CloudResourceClient, NodeScheduler
from cluster_upgrade.clients.k8s_core import K8sCoreClient
from cluster_upgrade.config import DefaultTimeouts, RunConfig, get_default_timeouts, resolve_pool_selection
from cluster_upgrade.errors import CloudAPIError, ConfigurationError, TopologyIncomplete, UpgradeError
from cluster_upgrade.models import (
    CONTROL_PLANE_POOL_NAME,
    AgentPoolProfile,
    ClusterModel,
    DiscoveredNode,
    ImageReference,
    MasterProfile,
    NodeRole,
    NodeState,
    NodeTransition,
    PoolPlan,
    Topology,
    UpgradePlan,
    UpgradeReport,
    UpgradeTarget,
)
from cluster_upgrade.naming import control_plane_vm_name
from cluster_upgrade.node_upgrade import NodeUpgrader, snapshot_for_slot
from cluster_upgrade.topology import discover_topology
from cluster_upgrade.versions import get_supported_upgrades, is_upgrade_allowed, is_valid_version, is_version_less

log = structlog.get_logger()


@dataclass
class RunState:
    """Mutable data derived during one run. RunConfig stays immutable beside it."""

    config: RunConfig
    model: ClusterModel
    topology: Topology | None = None
    plan: UpgradePlan | None = None
    history: list[NodeTransition] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failure: UpgradeError | None = None

    def record(self, change: NodeTransition) -> None:
        self.history.append(change)
        log.info(
            "node_state_changed",
            pool=change.pool_name,
            node=change.node_name,
            from_state=change.from_state.value,
            to_state=change.to_state.value,
        )


def _already_current(node: DiscoveredNode, version: str, image: ImageReference | None) -> bool:
    if node.current_version != version:
        return False
    return image is None or image.same_image(node.resource.image_reference)


def _target_for(
    node: DiscoveredNode, config: RunConfig, image: ImageReference | None, skipped: list[str]
) -> UpgradeTarget | None:
    """Build the target for a discovered node, or None when it is left alone."""
    name = node.resource.name
    version = node.current_version if node.current_version and is_valid_version(node.current_version) else None
    target = UpgradeTarget(
        pool_name=node.pool_name,
        role=node.role,
        node_name=node.resource.node_name,
        index=node.index,
        resource=node.resource,
        current_version=node.current_version,
        desired_version=config.upgrade_version,
        desired_image=image,
    )
    if _already_current(node, config.upgrade_version, image):
        target.state = NodeState.COMPLETED
        target.last_state = NodeState.COMPLETED
        return target
    if version is None and not config.force:
        log.warning("skipping_node_unknown_version", pool=node.pool_name, node=name)
        skipped.append(name)
        return None
    if version is not None and not config.force and is_version_less(config.upgrade_version, version):
        log.warning("skipping_node_newer_version", pool=node.pool_name, node=name, version=version)
        skipped.append(name)
        return None
    return target


def _control_plane_plan(config: RunConfig, model: ClusterModel, topology: Topology, skipped: list[str]) -> PoolPlan:
    master = model.properties.master_profile
    nodes = topology.control_plane
    if not nodes:
        msg = "no control plane VMs found for this cluster"
        raise TopologyIncomplete(msg, stage="topology", pool=CONTROL_PLANE_POOL_NAME)
    if not config.force:
        for node in nodes:
            if not node.current_version or not is_valid_version(node.current_version):
                msg = f"cannot read the orchestrator version of control plane VM {node.resource.name}"
                raise TopologyIncomplete(
                    msg, stage="topology", pool=CONTROL_PLANE_POOL_NAME, node=node.resource.node_name
                )

    targets = [t for node in nodes if (t := _target_for(node, config, master.image_reference, skipped))]

    # Slots below the profile count with no VM were left empty by an earlier run
    # that failed after decommission; they are recreated from a sibling.
    present = {node.index for node in nodes}
    sibling = nodes[0]
    for index in range(master.count):
        if index in present:
            continue
        name = control_plane_vm_name(model.name_suffix, index)
        snapshot = snapshot_for_slot(sibling.resource.snapshot, sibling.resource.name, sibling.index or 0, name, index)
        resource = sibling.resource.model_copy(
            update={"id": "", "name": name, "computer_name": name, "snapshot": snapshot}
        )
        log.warning("control_plane_slot_missing", node=name, index=index)
        targets.append(
            UpgradeTarget(
                pool_name=CONTROL_PLANE_POOL_NAME,
                role=NodeRole.CONTROL_PLANE,
                node_name=name,
                index=index,
                resource=resource,
                desired_version=config.upgrade_version,
                desired_image=master.image_reference,
                state=NodeState.DECOMMISSIONED,
                last_state=NodeState.DECOMMISSIONED,
            )
        )
    targets.sort(key=lambda t: t.index or 0)
    return PoolPlan(
        pool_name=CONTROL_PLANE_POOL_NAME,
        role=NodeRole.CONTROL_PLANE,
        availability_profile=master.availability_profile,
        max_unavailable=1,
        targets=targets,
    )


def _desired_image(model: ClusterModel, pool: AgentPoolProfile) -> ImageReference | None:
    """The pool image, or for Windows pools without one, the pinned Windows profile image."""
    if pool.image_reference is not None or not pool.is_windows:
        return pool.image_reference
    profile = model.properties.windows_profile
    if profile is None or not profile.image_version:
        return None
    return ImageReference(
        publisher=profile.windows_publisher,
        offer=profile.windows_offer,
        sku=profile.windows_sku,
        version=profile.image_version,
    )


def build_plan(config: RunConfig, model: ClusterModel, topology: Topology) -> tuple[UpgradePlan, list[str]]:
    """Enumerate the pools and nodes this run will touch, in execution order.

    Returns the plan and the names of nodes left out of it.
    """
    selected = resolve_pool_selection(config, model)
    skipped: list[str] = []
    plan = UpgradePlan(
        resource_group=config.resource_group,
        current_version=model.current_version,
        target_version=config.upgrade_version,
        force=config.force,
    )
    if CONTROL_PLANE_POOL_NAME in selected:
        plan.pools.append(_control_plane_plan(config, model, topology, skipped))

    for pool in model.properties.agent_pool_profiles:
        if pool.name not in selected:
            continue
        image = _desired_image(model, pool)
        targets = [
            t for node in topology.nodes(pool.name) if (t := _target_for(node, config, image, skipped))
        ]
        plan.pools.append(
            PoolPlan(
                pool_name=pool.name,
                role=NodeRole.WORKER,
                availability_profile=pool.availability_profile,
                max_unavailable=config.max_unavailable,
                targets=targets,
            )
        )
    return plan, skipped


def build_report(state: RunState) -> UpgradeReport:
    """Summarise a finished or halted run."""
    targets = state.plan.targets() if state.plan else []
    upgraded = {c.node_name for c in state.history if c.to_state == NodeState.COMPLETED}
    already = [t for t in targets if t.state == NodeState.COMPLETED and t.node_name not in upgraded]
    failed = [t for t in targets if t.state == NodeState.FAILED]
    success = state.failure is None
    if success:
        summary = (
            f"Upgraded {len(upgraded)} node(s) to {state.config.upgrade_version}; "
            f"{len(already) + len(state.skipped)} skipped."
        )
    else:
        summary = f"Upgrade halted: {state.failure}"
    return UpgradeReport(
        success=success,
        resource_group=state.config.resource_group,
        current_version=state.plan.current_version if state.plan else state.model.current_version,
        target_version=state.config.upgrade_version,
        nodes_total=len(targets) + len(state.skipped),
        nodes_upgraded=len(upgraded),
        nodes_skipped=len(already) + len(state.skipped),
        nodes_failed=len(failed),
        failure=str(state.failure) if state.failure else None,
        summary=summary,
        timestamp=datetime.now(UTC).isoformat(),
        nodes=targets,
    )


class ClusterUpgrader:
    """Upgrades one cluster's fleet to ``config.upgrade_version``.

    The model is mutated in memory as pools complete; persisting it is the
    caller's job, whether the run succeeds or fails.
    """

    def __init__(
        self,
        config: RunConfig,
        model: ClusterModel,
        scheduler: NodeScheduler | None = None,
        defaults: DefaultTimeouts | None = None,
    ) -> None:
        self.config = config
        self.model = model
        self._scheduler = scheduler
        self._defaults = defaults or get_default_timeouts()
        self.last_run: RunState | None = None

    def validate(self) -> None:
        """Check the version transition. Raises a ValidationError subclass when denied."""
        supported = self.config.supported_upgrades
        if supported is None and not self.config.force:
            supported = tuple(get_supported_upgrades(self.model.current_version))
        is_upgrade_allowed(self.model.current_version, self.config.upgrade_version, supported or (), self.config.force)

    async def plan_upgrade(self, cloud: CloudResourceClient) -> UpgradePlan:
        """Validate and discover, returning the plan without touching any node."""
        self.validate()
        return await self._plan(cloud, RunState(config=self.config, model=self.model))

    async def _plan(self, cloud: CloudResourceClient, state: RunState) -> UpgradePlan:
        name_suffix = self.model.name_suffix
        if not name_suffix:
            msg = "cluster model has no cluster ID (name suffix); cannot recognise cluster resources"
            raise ConfigurationError(msg, stage="configuration")
        state.topology = await discover_topology(cloud, self.config.resource_group, name_suffix, self.model)
        state.plan, state.skipped = build_plan(self.config, self.model, state.topology)
        log.info(
            "upgrade_plan",
            resource_group=self.config.resource_group,
            current_version=state.plan.current_version,
            target_version=state.plan.target_version,
            nodes=state.plan.describe(),
            skipped=state.skipped,
        )
        return state.plan

    async def upgrade_cluster(
        self,
        cloud: CloudResourceClient,
        kube_config: str | None = None,
        build_tag: str = "",
    ) -> UpgradeReport:
        """Run the full upgrade.

        Raises:
            UpgradeError: The first failure. Node failures name the pool, node
                and step; ``last_run`` keeps the partial state for reporting.
        """
        state = RunState(config=self.config, model=self.model)
        self.last_run = state
        try:
            await self._run(cloud, state, kube_config, build_tag)
        except UpgradeError as exc:
            state.failure = exc
            raise
        log.info(
            "cluster_upgrade_completed",
            resource_group=self.config.resource_group,
            target_version=self.config.upgrade_version,
        )
        return build_report(state)

    async def _run(self, cloud: CloudResourceClient, state: RunState, kube_config: str | None, build_tag: str) -> None:
        self.validate()
        try:
            await cloud.ensure_resource_group(self.config.resource_group, self.config.location)
        except Exception as exc:
            msg = f"failed to ensure resource group {self.config.resource_group}: {exc}"
            raise CloudAPIError(msg, stage="resource_group") from exc

        plan = await self._plan(cloud, state)

        scheduler = self._scheduler or K8sCoreClient(
            kube_config=kube_config, poll_interval=self._defaults.readiness_poll_seconds
        )
        upgrader = NodeUpgrader(
            cloud,
            scheduler,
            state,
            step_timeout=self.config.step_timeout or self._defaults.step_timeout,
            drain_timeout=self.config.cordon_drain_timeout or self._defaults.cordon_drain_timeout,
            drain_timeout_policy=self.config.effective_drain_timeout_policy,
            build_tag=build_tag,
        )

        control_plane_recorded = False
        for pool_plan in plan.pools:
            log.info(
                "pool_upgrade_started",
                pool=pool_plan.pool_name,
                role=pool_plan.role.value,
                nodes=len(pool_plan.targets),
            )
            if pool_plan.role == NodeRole.CONTROL_PLANE:
                await self._run_control_plane(pool_plan, upgrader)
            else:
                await self._run_worker_pool(pool_plan, upgrader)
            recorded = self._record_pool(pool_plan, state)
            if pool_plan.role == NodeRole.CONTROL_PLANE:
                control_plane_recorded = recorded
            log.info("pool_upgrade_completed", pool=pool_plan.pool_name)

        # The cluster version moves only after every selected pool has finished.
        if control_plane_recorded:
            self.model.properties.orchestrator_profile.orchestrator_version = self.config.upgrade_version

    def _record_pool(self, pool_plan: PoolPlan, state: RunState) -> bool:
        """Write a finished pool's version and image to the in-memory model.

        Nothing is written when nodes of the pool were left out of the plan.
        Image references are only rewritten on profiles that already pin one.
        Returns whether the pool was recorded.
        """
        nodes = state.topology.nodes(pool_plan.pool_name) if state.topology else []
        left_out = sorted({n.resource.name for n in nodes} & set(state.skipped))
        if left_out:
            log.warning("pool_version_not_recorded", pool=pool_plan.pool_name, skipped=left_out)
            return False
        properties = self.model.properties
        profile: MasterProfile | AgentPoolProfile | None
        if pool_plan.role == NodeRole.CONTROL_PLANE:
            profile = properties.master_profile
        else:
            profile = properties.pool(pool_plan.pool_name)
            if profile is None:
                return False
            profile.orchestrator_version = self.config.upgrade_version
        image = next((t.desired_image for t in pool_plan.targets if t.desired_image is not None), None)
        if image is not None and profile.image_reference is not None:
            profile.image_reference = image
        return True

    async def _run_control_plane(self, pool_plan: PoolPlan, upgrader: NodeUpgrader) -> None:
        for target in pool_plan.targets:
            await upgrader.upgrade(target)

    async def _run_worker_pool(self, pool_plan: PoolPlan, upgrader: NodeUpgrader) -> None:
        semaphore = asyncio.Semaphore(pool_plan.max_unavailable)
        halted = asyncio.Event()

        async def run_one(target: UpgradeTarget) -> None:
            async with semaphore:
                if halted.is_set():
                    return
                try:
                    await upgrader.upgrade(target)
                except UpgradeError:
                    halted.set()
                    raise

        # Tasks start in plan order and the semaphore wakes waiters FIFO, so
        # max_unavailable=1 upgrades the pool sequentially in order.
        results = await asyncio.gather(*(run_one(t) for t in pool_plan.targets), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
