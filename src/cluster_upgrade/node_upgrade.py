"""Per-node upgrade state machine.

A node moves ``pending -> cordoned -> drained -> decommissioned -> recreated ->
validated -> completed``. Every transition is forward-only; any failure moves the
node to the terminal ``failed`` state with the step it was entering recorded.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from cluster_upgrade.clients import CloudResourceClient, NodeScheduler
from cluster_upgrade.config import DrainTimeoutPolicy
from cluster_upgrade.errors import (
    CloudAPIError,
    IllegalTransitionError,
    StepTimeoutError,
    UpgradeError,
)
from cluster_upgrade.models import (
    NODE_STATE_ORDER,
    ORCHESTRATOR_TAG,
    TERMINAL_STATES,
    ComputeResourceSpec,
    NodeRole,
    NodeState,
    NodeTransition,
    UpgradeTarget,
)

if TYPE_CHECKING:
    from cluster_upgrade.orchestrator import RunState

log = structlog.get_logger()

BUILD_TAG = "aksEngineVersion"


def transition(target: UpgradeTarget, to_state: NodeState) -> NodeTransition:
    """Move ``target`` to ``to_state`` and return the recorded transition.

    Raises:
        IllegalTransitionError: If the node is terminal, or ``to_state`` is not
            strictly ahead of the current state (``failed`` excepted).
    """
    from_state = target.state
    if from_state in TERMINAL_STATES:
        msg = f"node is already {from_state.value}, cannot move to {to_state.value}"
        raise IllegalTransitionError(msg, pool=target.pool_name, node=target.node_name, step=to_state.value)
    if to_state != NodeState.FAILED and NODE_STATE_ORDER.index(to_state) <= NODE_STATE_ORDER.index(from_state):
        msg = f"illegal transition {from_state.value} -> {to_state.value}"
        raise IllegalTransitionError(msg, pool=target.pool_name, node=target.node_name, step=to_state.value)

    target.state = to_state
    if to_state != NodeState.FAILED:
        target.last_state = to_state
    return NodeTransition(
        pool_name=target.pool_name,
        node_name=target.node_name,
        from_state=from_state,
        to_state=to_state,
        timestamp=datetime.now(UTC).isoformat(),
    )


class NodeUpgrader:
    """Drives single nodes through the upgrade states against the cloud and the cluster."""

    def __init__(
        self,
        cloud: CloudResourceClient,
        scheduler: NodeScheduler,
        state: RunState,
        *,
        step_timeout: timedelta,
        drain_timeout: timedelta,
        drain_timeout_policy: DrainTimeoutPolicy,
        build_tag: str = "",
    ) -> None:
        self._cloud = cloud
        self._scheduler = scheduler
        self._state = state
        self._step_timeout = step_timeout
        self._drain_timeout = drain_timeout
        self._drain_timeout_policy = drain_timeout_policy
        self._build_tag = build_tag

    async def upgrade(self, target: UpgradeTarget) -> UpgradeTarget:
        """Run ``target`` from its current state to ``completed``.

        Targets already ``completed`` are returned untouched. A target whose VM
        is already gone starts at ``decommissioned`` and is only recreated.

        Raises:
            UpgradeError: The failure that moved the node to ``failed``, naming
                the pool, node and step.
            IllegalTransitionError: If the node already failed in this run.
        """
        if target.state == NodeState.COMPLETED:
            return target
        if target.state == NodeState.FAILED:
            step = target.failed_step.value if target.failed_step else None
            msg = f"node {target.node_name} already failed and cannot be resumed in this run"
            raise IllegalTransitionError(msg, stage="upgrade", pool=target.pool_name, node=target.node_name, step=step)

        steps: list[tuple[NodeState, NodeState, Callable[[UpgradeTarget], Awaitable[None]]]] = [
            (NodeState.PENDING, NodeState.CORDONED, self._cordon),
            (NodeState.CORDONED, NodeState.DRAINED, self._drain),
            (NodeState.DRAINED, NodeState.DECOMMISSIONED, self._decommission),
            (NodeState.DECOMMISSIONED, NodeState.RECREATED, self._recreate),
            (NodeState.RECREATED, NodeState.VALIDATED, self._validate),
        ]
        log.info("node_upgrade_started", pool=target.pool_name, node=target.node_name, state=target.state.value)
        for from_state, to_state, step in steps:
            if target.state != from_state:
                continue
            try:
                await step(target)
            except UpgradeError as exc:
                self._fail(target, to_state, exc)
                raise
            self._state.record(transition(target, to_state))
        if target.state == NodeState.VALIDATED:
            self._state.record(transition(target, NodeState.COMPLETED))

        log.info("node_upgrade_completed", pool=target.pool_name, node=target.node_name)
        return target

    def _fail(self, target: UpgradeTarget, step: NodeState, exc: UpgradeError) -> None:
        target.failed_step = step
        target.error = str(exc)
        self._state.record(transition(target, NodeState.FAILED))
        log.error(
            "node_upgrade_failed",
            pool=target.pool_name,
            node=target.node_name,
            step=step.value,
            last_state=target.last_state.value if target.last_state else None,
            error=str(exc),
        )

    async def _bounded(
        self,
        awaitable: Awaitable[Any],
        timeout: timedelta,
        target: UpgradeTarget,
        step: NodeState,
        error_cls: type[UpgradeError] = UpgradeError,
    ) -> Any:
        """Await ``awaitable`` with a deadline, mapping failures onto the error taxonomy.

        In-flight cloud calls are not aborted on timeout; the deadline is only
        enforced from the orchestrator's side.
        """
        context = {"stage": "upgrade", "pool": target.pool_name, "node": target.node_name, "step": step.value}
        try:
            return await asyncio.wait_for(awaitable, timeout.total_seconds())
        except TimeoutError as exc:
            msg = f"timed out after {timeout} waiting for node {target.node_name} to reach {step.value}"
            raise StepTimeoutError(msg, **context) from exc
        except UpgradeError:
            raise
        except Exception as exc:
            msg = f"{step.value} failed for node {target.node_name}: {exc}"
            raise error_cls(msg, **context) from exc

    async def _cordon(self, target: UpgradeTarget) -> None:
        await self._bounded(
            self._scheduler.cordon_node(target.node_name), self._step_timeout, target, NodeState.CORDONED
        )

    async def _drain(self, target: UpgradeTarget) -> None:
        try:
            await self._bounded(
                self._scheduler.drain_node(target.node_name, self._drain_timeout),
                self._drain_timeout,
                target,
                NodeState.DRAINED,
            )
        except StepTimeoutError:
            if self._drain_timeout_policy != "proceed":
                raise
            log.warning(
                "drain_timeout_proceeding",
                pool=target.pool_name,
                node=target.node_name,
                timeout=str(self._drain_timeout),
            )

    async def _decommission(self, target: UpgradeTarget) -> None:
        if target.resource is None:
            return
        await self._bounded(
            self._cloud.delete_compute_resource(target.resource),
            self._step_timeout,
            target,
            NodeState.DECOMMISSIONED,
            CloudAPIError,
        )

    async def _recreate(self, target: UpgradeTarget) -> None:
        target.replacement = await self._bounded(
            self._cloud.create_compute_resource(self._replacement_spec(target)),
            self._step_timeout,
            target,
            NodeState.RECREATED,
            CloudAPIError,
        )

    async def _validate(self, target: UpgradeTarget) -> None:
        node_name = target.replacement.node_name if target.replacement else target.node_name
        await self._bounded(
            self._scheduler.wait_for_node_ready(node_name, target.desired_version),
            self._step_timeout,
            target,
            NodeState.VALIDATED,
        )

    def _replacement_spec(self, target: UpgradeTarget) -> ComputeResourceSpec:
        resource = target.resource
        if resource is None:
            msg = f"no resource snapshot available to recreate node {target.node_name}"
            raise CloudAPIError(
                msg, stage="upgrade", pool=target.pool_name, node=target.node_name, step=NodeState.RECREATED.value
            )
        tags = {**resource.tags, ORCHESTRATOR_TAG: f"Kubernetes:{target.desired_version}"}
        if self._build_tag:
            tags[BUILD_TAG] = self._build_tag
        return ComputeResourceSpec(
            name=resource.name,
            resource_group=resource.resource_group or self._state.config.resource_group,
            location=resource.location or self._state.config.location,
            kind=resource.kind,
            pool_name=target.pool_name,
            index=target.index,
            os_type=resource.os_type,
            scale_set_name=resource.scale_set_name,
            image_reference=target.desired_image,
            tags=tags,
            snapshot=resource.snapshot,
        )


def snapshot_for_slot(
    snapshot: dict[str, Any], sibling_name: str, sibling_index: int, name: str, index: int
) -> dict[str, Any]:
    """Derive a VM snapshot for an empty control-plane slot from a sibling's snapshot.

    The sibling's VM name and NIC index are rewritten to the slot's, so the new VM
    reattaches the NIC and disks left behind for that slot.
    """
    vm_name_re = re.compile(re.escape(sibling_name) + r"(?![0-9])")
    nic_re = re.compile(rf"-nic-{sibling_index}(?![0-9])")

    def rewrite(value: Any) -> Any:
        if isinstance(value, str):
            return nic_re.sub(f"-nic-{index}", vm_name_re.sub(name, value))
        if isinstance(value, dict):
            return {k: rewrite(v) for k, v in value.items()}
        if isinstance(value, list):
            return [rewrite(v) for v in value]
        return value

    return rewrite(snapshot)
