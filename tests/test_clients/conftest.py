"""Client-specific test fixtures: mock Kubernetes and Azure SDK objects."""

from __future__ import annotations

from collections.abc import Callable
from unittest.mock import MagicMock

import pytest
from kubernetes.client.exceptions import ApiException


def _make_mock_pod(
    name: str = "web-0",
    namespace: str = "default",
    phase: str = "Running",
    annotations: dict[str, str] | None = None,
    owner_kind: str | None = "ReplicaSet",
) -> MagicMock:
    pod = MagicMock()
    pod.metadata.name = name
    pod.metadata.namespace = namespace
    pod.metadata.annotations = annotations
    if owner_kind is None:
        pod.metadata.owner_references = None
    else:
        owner = MagicMock()
        owner.kind = owner_kind
        pod.metadata.owner_references = [owner]
    pod.status.phase = phase
    return pod


def _make_mock_node(ready: bool = True, kubelet_version: str = "v1.24.0") -> MagicMock:
    node = MagicMock()
    condition = MagicMock()
    condition.type = "Ready"
    condition.status = "True" if ready else "False"
    node.status.conditions = [condition]
    node.status.node_info.kubelet_version = kubelet_version
    return node


def _make_mock_vm(
    name: str = "k8s-master-38912981-0",
    computer_name: str | None = None,
    orchestrator: str = "Kubernetes:1.23.5",
    os_type: str = "Linux",
    image_id: str | None = None,
    instance_id: str | None = None,
) -> MagicMock:
    vm = MagicMock()
    vm.id = f"/subscriptions/0000/resourceGroups/k8s-test-rg/providers/Microsoft.Compute/virtualMachines/{name}"
    vm.name = name
    vm.location = "westus2"
    vm.tags = {"orchestrator": orchestrator}
    vm.instance_id = instance_id
    vm.provisioning_state = "Succeeded"
    vm.os_profile.computer_name = computer_name or name
    vm.storage_profile.os_disk.os_type = os_type
    image = vm.storage_profile.image_reference
    image.id = image_id
    image.publisher = None if image_id else "microsoft-aks"
    image.offer = None if image_id else "aks"
    image.sku = None if image_id else "aks-engine-ubuntu-1804-202112"
    image.version = None if image_id else "2021.12.06"
    vm.as_dict.return_value = {
        "id": vm.id,
        "name": name,
        "location": "westus2",
        "tags": dict(vm.tags),
        "provisioning_state": "Succeeded",
        "vm_id": "0f1e",
        "hardware_profile": {"vm_size": "Standard_D2s_v3"},
        "storage_profile": {
            "os_disk": {
                "name": f"{name}_OsDisk_1",
                "create_option": "FromImage",
                "managed_disk": {"id": f"/disks/{name}_OsDisk_1"},
            },
        },
        "network_profile": {"network_interfaces": [{"id": "/networkInterfaces/k8s-master-38912981-nic-0"}]},
    }
    return vm


@pytest.fixture
def pod_factory() -> Callable[..., MagicMock]:
    return _make_mock_pod


@pytest.fixture
def node_factory() -> Callable[..., MagicMock]:
    return _make_mock_node


@pytest.fixture
def vm_factory() -> Callable[..., MagicMock]:
    return _make_mock_vm


@pytest.fixture
def api_exception() -> Callable[[int], ApiException]:
    """Build a Kubernetes ApiException with the given HTTP status."""

    def factory(status: int) -> ApiException:
        return ApiException(status=status, reason="test")

    return factory
