"""plan_cluster_upgrade / upgrade_cluster: run the orchestrator against a registered cluster."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

import pydantic
import structlog

from cluster_upgrade.clients import CloudResourceClient, NodeScheduler
from cluster_upgrade.clients.azure_compute import AzureComputeClient
from cluster_upgrade.clients.k8s_core import K8sCoreClient
from cluster_upgrade.config import ClusterConfig, RunConfig, build_run_config, get_default_timeouts, resolve_cluster
from cluster_upgrade.errors import UpgradeError
from cluster_upgrade.model_store import load_cluster_model, save_cluster_model
from cluster_upgrade.models import ClusterModel, ToolError, UpgradePlan, UpgradeReport, UpgradeRequest
from cluster_upgrade.orchestrator import ClusterUpgrader, build_report
from cluster_upgrade.preparation import custom_cloud_endpoints, prepare_model, restore_model, validate_base_images

log = structlog.get_logger()


def _build_tag() -> str:
    try:
        return version("cluster-upgrade")
    except PackageNotFoundError:
        return "unknown"


def _run_config(request: UpgradeRequest, cluster: ClusterConfig) -> RunConfig:
    return build_run_config(
        resource_group=cluster.resource_group,
        location=cluster.location,
        upgrade_version=request.upgrade_version,
        force=request.force,
        control_plane_only=request.control_plane_only,
        agent_pools=request.agent_pools,
        vm_timeout_minutes=request.vm_timeout_minutes,
        cordon_drain_timeout_minutes=request.cordon_drain_timeout_minutes,
        drain_timeout_policy=request.drain_timeout_policy,
        max_unavailable=request.max_unavailable,
        upgrade_windows_vhd=request.upgrade_windows_vhd,
    )


def _cloud(cluster: ClusterConfig, model: ClusterModel) -> AzureComputeClient:
    return AzureComputeClient(cluster.subscription_id, cloud=custom_cloud_endpoints(model))


def _scheduler(cluster: ClusterConfig) -> K8sCoreClient:
    return K8sCoreClient(
        kubeconfig_path=cluster.kubeconfig_path,
        poll_interval=get_default_timeouts().readiness_poll_seconds,
    )


def tool_error(cluster_id: str, exc: Exception) -> ToolError:
    """Describe a failure with the stage and, for node failures, the pool, node and step."""
    if isinstance(exc, UpgradeError):
        return ToolError(
            error=exc.message,
            stage=exc.stage or "upgrade",
            cluster=cluster_id,
            pool=exc.pool,
            node=exc.node,
            step=exc.step,
        )
    if isinstance(exc, pydantic.ValidationError):
        return ToolError(error=str(exc), stage="configuration", cluster=cluster_id)
    return ToolError(error=str(exc), stage="unknown", cluster=cluster_id)


async def plan_cluster_upgrade_handler(
    request: UpgradeRequest,
    cloud: CloudResourceClient | None = None,
) -> UpgradePlan:
    """Validate the request and return the upgrade plan without changing anything.

    The model fixups are applied to an in-memory copy only; nothing is saved.
    """
    cluster = resolve_cluster(request.cluster)
    config = _run_config(request, cluster)
    model, _ = load_cluster_model(cluster.api_model_path)
    preparation = prepare_model(model, config)
    upgrader = ClusterUpgrader(preparation.config, model)
    return await upgrader.plan_upgrade(cloud or _cloud(cluster, model))


async def upgrade_cluster_handler(
    request: UpgradeRequest,
    cloud: CloudResourceClient | None = None,
    scheduler: NodeScheduler | None = None,
) -> UpgradeReport:
    """Upgrade a registered cluster and persist the resulting api model.

    The model is saved after success, and after a failure once any node has
    changed state. A halted run leaves the cluster version unchanged, so the
    same request resumes it.

    Raises:
        UpgradeError: The failure that halted the run.
    """
    cluster = resolve_cluster(request.cluster)
    config = _run_config(request, cluster)
    model, api_version = load_cluster_model(cluster.api_model_path)
    preparation = prepare_model(model, config)
    cloud = cloud or _cloud(cluster, model)
    upgrader = ClusterUpgrader(preparation.config, model, scheduler=scheduler or _scheduler(cluster))
    if model.properties.is_azure_stack_cloud():
        upgrader.validate()
        await validate_base_images(cloud, config.location, model)

    log.info(
        "cluster_upgrade_started",
        cluster=cluster.cluster_id,
        current_version=model.current_version,
        target_version=config.upgrade_version,
        force=config.force,
    )
    try:
        report = await upgrader.upgrade_cluster(cloud, build_tag=_build_tag())
    except UpgradeError:
        state = upgrader.last_run
        if state is not None and state.history:
            failed = build_report(state)
            log.error(
                "cluster_upgrade_halted",
                cluster=cluster.cluster_id,
                upgraded=failed.nodes_upgraded,
                failed=failed.nodes_failed,
            )
            restore_model(model, preparation)
            save_cluster_model(cluster.api_model_path, model, api_version)
        raise

    restore_model(model, preparation)
    save_cluster_model(cluster.api_model_path, model, api_version)
    return report
