"""Kubernetes Core API wrapper: cordon, drain and readiness of nodes."""

from __future__ import annotations

import asyncio
import threading
import time
from datetime import timedelta
from typing import Any

import structlog
from kubernetes import client as k8s_client
from kubernetes.client.exceptions import ApiException

from cluster_upgrade.clients import load_k8s_api_client, load_k8s_api_client_from_content

log = structlog.get_logger()

MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"
_FINISHED_PHASES = {"Succeeded", "Failed"}


class K8sCoreClient:
    """Wrapper around the Kubernetes Core V1 API for node lifecycle operations."""

    def __init__(
        self,
        kube_config: str | None = None,
        kubeconfig_path: str | None = None,
        poll_interval: float = 10.0,
    ) -> None:
        self._kube_config = kube_config
        self._kubeconfig_path = kubeconfig_path
        self._poll_interval = poll_interval
        self._api: k8s_client.CoreV1Api | None = None
        self._lock = threading.Lock()

    def _get_api(self) -> k8s_client.CoreV1Api:
        with self._lock:
            if self._api is None:
                if self._kube_config:
                    api_client = load_k8s_api_client_from_content(self._kube_config)
                else:
                    api_client = load_k8s_api_client(self._kubeconfig_path)
                self._api = k8s_client.CoreV1Api(api_client)
            return self._api

    async def cordon_node(self, node_name: str) -> None:
        """Mark a node unschedulable."""
        api = self._get_api()
        try:
            await asyncio.to_thread(api.patch_node, node_name, {"spec": {"unschedulable": True}})
        except ApiException as e:
            # A node that never registered, or already left, has nothing to cordon.
            if e.status == 404:
                log.warning("cordon_node_not_found", node=node_name)
                return
            log.error("failed_to_cordon_node", node=node_name, status=e.status)
            raise
        log.info("node_cordoned", node=node_name)

    async def drain_node(self, node_name: str, timeout: timedelta) -> None:
        """Evict every evictable pod from a node, waiting until they are gone.

        Mirror pods and DaemonSet pods are left in place. Evictions refused by a
        PodDisruptionBudget (HTTP 429) are retried until ``timeout`` elapses.

        Raises:
            TimeoutError: If evictable pods remain when ``timeout`` elapses.
        """
        api = self._get_api()
        deadline = time.monotonic() + timeout.total_seconds()
        while True:
            pods = await self._evictable_pods(api, node_name)
            if not pods:
                log.info("node_drained", node=node_name)
                return
            for pod in pods:
                await self._evict(api, pod)
            if time.monotonic() >= deadline:
                remaining = [f"{p.metadata.namespace}/{p.metadata.name}" for p in pods]
                msg = f"timed out draining node {node_name}; {len(remaining)} pods remain: {', '.join(remaining[:5])}"
                raise TimeoutError(msg)
            await asyncio.sleep(self._poll_interval)

    async def _evictable_pods(self, api: k8s_client.CoreV1Api, node_name: str) -> list[Any]:
        try:
            pod_list = await asyncio.to_thread(
                api.list_pod_for_all_namespaces, field_selector=f"spec.nodeName={node_name}"
            )
        except Exception:
            log.error("failed_to_list_pods", node=node_name)
            raise
        return [pod for pod in pod_list.items if _is_evictable(pod)]

    async def _evict(self, api: k8s_client.CoreV1Api, pod: Any) -> None:
        name = pod.metadata.name
        namespace = pod.metadata.namespace
        eviction = k8s_client.V1Eviction(metadata=k8s_client.V1ObjectMeta(name=name, namespace=namespace))
        try:
            await asyncio.to_thread(api.create_namespaced_pod_eviction, name, namespace, eviction)
        except ApiException as e:
            if e.status == 404:
                return
            if e.status == 429:
                log.info("eviction_blocked_by_pdb", pod=name, namespace=namespace)
                return
            log.error("failed_to_evict_pod", pod=name, namespace=namespace, status=e.status)
            raise

    async def wait_for_node_ready(self, node_name: str, version: str | None = None) -> None:
        """Poll until the node reports Ready (and runs ``version`` when given).

        Polls forever; callers bound the wait.
        """
        api = self._get_api()
        while True:
            try:
                node = await asyncio.to_thread(api.read_node, node_name)
            except ApiException as e:
                if e.status != 404:
                    log.error("failed_to_read_node", node=node_name, status=e.status)
                    raise
                node = None
            if node is not None and _is_ready(node, version):
                log.info("node_ready", node=node_name, version=version)
                return
            await asyncio.sleep(self._poll_interval)


def _is_evictable(pod: Any) -> bool:
    if pod.status and pod.status.phase in _FINISHED_PHASES:
        return False
    annotations = pod.metadata.annotations or {}
    if MIRROR_POD_ANNOTATION in annotations:
        return False
    owners = pod.metadata.owner_references or []
    return not any(owner.kind == "DaemonSet" for owner in owners)


def _is_ready(node: Any, version: str | None) -> bool:
    conditions = {c.type: c.status for c in (node.status.conditions or [])}
    if conditions.get("Ready") != "True":
        return False
    if version is None:
        return True
    kubelet = node.status.node_info.kubelet_version if node.status.node_info else ""
    return (kubelet or "").lstrip("v") == version
