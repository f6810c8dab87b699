"""MCP server entry point and tool registration."""

from __future__ import annotations

import sys
import time

import structlog
from mcp.server.fastmcp import FastMCP

from cluster_upgrade.config import load_cluster_map, validate_cluster_config
from cluster_upgrade.models import UpgradeRequest, scrub_sensitive_values
from cluster_upgrade.tools.upgrade import plan_cluster_upgrade_handler, tool_error, upgrade_cluster_handler

# Configure structlog for JSON output to stderr
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
    ],
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
)

log = structlog.get_logger()

mcp = FastMCP("Cluster Upgrade Orchestrator")

# Resource snapshots are raw cloud payloads and stay out of tool output.
_PLAN_EXCLUDE = {"pools": {"__all__": {"targets": {"__all__": {"resource"}}}}}
_REPORT_EXCLUDE = {"nodes": {"__all__": {"resource", "replacement"}}}


@mcp.tool()
async def plan_cluster_upgrade(
    cluster: str,
    upgrade_version: str,
    force: bool = False,
    control_plane_only: bool = False,
    agent_pools: list[str] | None = None,
    max_unavailable: int = 1,
) -> str:
    """Preview a rolling upgrade without changing the cluster.

    Validates the version transition, discovers the deployed VMs and returns the
    ordered plan: control plane first, then each worker pool, with the nodes that
    would be replaced and those already at the target version.

    Args:
        cluster: Cluster ID from the cluster registry (e.g., 'prod-westus2').
        upgrade_version: Target Kubernetes version, e.g. '1.24.9'.
        force: Skip the supported-upgrade-path check.
        control_plane_only: Plan the control plane pool only.
        agent_pools: Restrict the run to these pools. Include 'master' to keep the control plane.
        max_unavailable: Worker nodes per pool upgraded concurrently. Default 1.
    """
    start = time.monotonic()
    try:
        request = UpgradeRequest(
            cluster=cluster,
            upgrade_version=upgrade_version,
            force=force,
            control_plane_only=control_plane_only,
            agent_pools=agent_pools,
            max_unavailable=max_unavailable,
        )
        plan = await plan_cluster_upgrade_handler(request)
        output = scrub_sensitive_values(plan.model_dump_json(indent=2, exclude=_PLAN_EXCLUDE))
        log.info("tool_completed", tool="plan_cluster_upgrade", cluster=cluster, latency_ms=_elapsed_ms(start))
        return output
    except Exception as e:
        error = tool_error(cluster, e)
        sanitised = scrub_sensitive_values(error.model_dump_json())
        log.error("tool_failed", tool="plan_cluster_upgrade", cluster=cluster, error=sanitised)
        raise RuntimeError(sanitised) from None


@mcp.tool()
async def upgrade_cluster(
    cluster: str,
    upgrade_version: str,
    force: bool = False,
    control_plane_only: bool = False,
    agent_pools: list[str] | None = None,
    vm_timeout_minutes: int | None = None,
    cordon_drain_timeout_minutes: int | None = None,
    drain_timeout_policy: str | None = None,
    max_unavailable: int = 1,
    upgrade_windows_vhd: bool = True,
) -> str:
    """Upgrade a cluster's VMs to a new Kubernetes version, one node at a time.

    Each node is cordoned, drained, deleted, recreated on the new version and
    checked for readiness. The control plane is upgraded before any worker pool.
    The first failure stops the run; the error names the pool, node and step.
    Re-running after a failure skips nodes already on the target version.

    Args:
        cluster: Cluster ID from the cluster registry (e.g., 'prod-westus2').
        upgrade_version: Target Kubernetes version, e.g. '1.24.9'.
        force: Skip the supported-upgrade-path check; drain timeouts then proceed unless a policy is given.
        control_plane_only: Upgrade the control plane pool only.
        agent_pools: Restrict the run to these pools. Include 'master' to keep the control plane.
        vm_timeout_minutes: Per-step deadline for VM delete, create and readiness.
        cordon_drain_timeout_minutes: Deadline for evicting workloads from a node.
        drain_timeout_policy: 'fail' or 'proceed' when a drain times out.
        max_unavailable: Worker nodes per pool upgraded concurrently. Default 1.
        upgrade_windows_vhd: Move Windows pools to the current Windows image.
    """
    start = time.monotonic()
    try:
        request = UpgradeRequest(
            cluster=cluster,
            upgrade_version=upgrade_version,
            force=force,
            control_plane_only=control_plane_only,
            agent_pools=agent_pools,
            vm_timeout_minutes=vm_timeout_minutes,
            cordon_drain_timeout_minutes=cordon_drain_timeout_minutes,
            drain_timeout_policy=drain_timeout_policy,
            max_unavailable=max_unavailable,
            upgrade_windows_vhd=upgrade_windows_vhd,
        )
        report = await upgrade_cluster_handler(request)
        output = scrub_sensitive_values(report.model_dump_json(indent=2, exclude=_REPORT_EXCLUDE))
        log.info("tool_completed", tool="upgrade_cluster", cluster=cluster, latency_ms=_elapsed_ms(start))
        return output
    except Exception as e:
        error = tool_error(cluster, e)
        sanitised = scrub_sensitive_values(error.model_dump_json())
        log.error("tool_failed", tool="upgrade_cluster", cluster=cluster, error=sanitised)
        raise RuntimeError(sanitised) from None


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


# MCP client configuration example:
#
# {
#   "mcpServers": {
#     "cluster-upgrade": {
#       "command": "uv",
#       "args": ["run", "--directory", "/path/to/cluster-upgrade", "python", "-m", "cluster_upgrade.server"]
#     }
#   }
# }

if __name__ == "__main__":
    load_cluster_map()
    validate_cluster_config()
    mcp.run(transport="stdio")
