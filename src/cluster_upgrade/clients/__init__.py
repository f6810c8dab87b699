"""Client interfaces and wrappers for the cloud compute API and the Kubernetes API."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Protocol

import yaml
from kubernetes import client as k8s_client

# Note 1: Both factories build an isolated ApiClient instead of calling
# `load_kube_config()`, which would mutate the SDK's process-wide default
# configuration. The upgrader may hold clients for more than one cluster.
from kubernetes.config import new_client_from_config, new_client_from_config_dict

from cluster_upgrade.models import ComputeResourceSpec, ImageReference, ResourceDescriptor


def load_k8s_api_client(kubeconfig_path: str | None = None, context: str | None = None) -> k8s_client.ApiClient:
    """Create an isolated Kubernetes API client from a kubeconfig file."""
    return new_client_from_config(config_file=kubeconfig_path, context=context)


def load_k8s_api_client_from_content(kube_config: str) -> k8s_client.ApiClient:
    """Create an isolated Kubernetes API client from kubeconfig YAML content."""
    config_dict: Any = yaml.safe_load(kube_config)
    if not isinstance(config_dict, dict):
        msg = "kubeconfig content is not a YAML mapping"
        raise ValueError(msg)
    return new_client_from_config_dict(config_dict)


class CloudResourceClient(Protocol):
    """The compute operations the orchestrator consumes.

    All calls block until the cloud reports completion. Implementations do not
    retry; the orchestrator bounds each call with its step timeout.
    """

    async def list_compute_resources(self, resource_group: str) -> list[ResourceDescriptor]: ...

    async def delete_compute_resource(self, resource: ResourceDescriptor) -> None: ...

    async def create_compute_resource(self, spec: ComputeResourceSpec) -> ResourceDescriptor: ...

    async def ensure_resource_group(self, name: str, location: str) -> None: ...

    async def image_exists(self, location: str, image: ImageReference) -> bool: ...


class NodeScheduler(Protocol):
    """The cluster scheduling operations the orchestrator consumes."""

    async def cordon_node(self, node_name: str) -> None: ...

    async def drain_node(self, node_name: str, timeout: timedelta) -> None: ...

    async def wait_for_node_ready(self, node_name: str, version: str | None = None) -> None: ...
