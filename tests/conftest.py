"""Shared test fixtures: api model builders and in-memory cloud and scheduler fakes."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import pytest

from cluster_upgrade.config import ClusterConfig, RunConfig
from cluster_upgrade.models import ClusterModel, ComputeResourceSpec, ImageReference, ResourceDescriptor

NAME_SUFFIX = "38912981"
RESOURCE_GROUP = "k8s-test-rg"


def make_api_model(
    version: str = "1.23.5",
    master_count: int = 3,
    pools: list[dict[str, Any]] | None = None,
    **properties: Any,
) -> dict[str, Any]:
    """Build a raw api model dict as it appears on disk."""
    if pools is None:
        pools = [{"name": "pool1", "count": 2, "availabilityProfile": "VirtualMachineScaleSets", "osType": "Linux"}]
    return {
        "apiVersion": "vlabs",
        "location": "westus2",
        "properties": {
            "clusterID": NAME_SUFFIX,
            "orchestratorProfile": {
                "orchestratorType": "Kubernetes",
                "orchestratorVersion": version,
                "kubernetesConfig": {"containerRuntime": "containerd", "networkPlugin": "azure"},
            },
            "masterProfile": {"count": master_count, "dnsPrefix": "k8s-test", "vmSize": "Standard_D2s_v3"},
            "agentPoolProfiles": pools,
            "linuxProfile": {"adminUsername": "azureuser"},
            **properties,
        },
    }


def make_resource(
    name: str,
    version: str | None = "1.23.5",
    kind: str = "vm",
    os_type: str = "Linux",
    tags: dict[str, str] | None = None,
    scale_set_name: str | None = None,
    instance_id: str | None = None,
    image: ImageReference | None = None,
) -> ResourceDescriptor:
    resource_tags = dict(tags or {})
    if version is not None:
        resource_tags.setdefault("orchestrator", f"Kubernetes:{version}")
    return ResourceDescriptor(
        id=f"/subscriptions/0000/resourceGroups/{RESOURCE_GROUP}/providers/Microsoft.Compute/virtualMachines/{name}",
        name=name,
        kind=kind,
        resource_group=RESOURCE_GROUP,
        location="westus2",
        os_type=os_type,
        scale_set_name=scale_set_name,
        instance_id=instance_id,
        tags=resource_tags,
        image_reference=image,
        snapshot={"name": name, "location": "westus2"},
    )


def make_fleet(version: str = "1.23.5", masters: int = 3, workers: int = 2) -> list[ResourceDescriptor]:
    """Control plane VMs plus scale set instances of pool1, all at ``version``."""
    fleet = [make_resource(f"k8s-master-{NAME_SUFFIX}-{i}", version) for i in range(masters)]
    for i in range(workers):
        fleet.append(
            make_resource(
                f"k8s-pool1-{NAME_SUFFIX}-vmss{i:06d}",
                version,
                kind="vmss_instance",
                scale_set_name=f"k8s-pool1-{NAME_SUFFIX}-vmss",
                instance_id=str(i),
            )
        )
    return fleet


class FakeCloud:
    """In-memory CloudResourceClient recording every call."""

    def __init__(self, resources: list[ResourceDescriptor] | None = None) -> None:
        self.resources = {r.name: r for r in resources or []}
        self.calls: list[tuple[str, str]] = []
        self.fail_delete: set[str] = set()
        self.fail_create: set[str] = set()
        self.hang_delete: set[str] = set()
        self.fail_list = False
        self.missing_images: set[str] = set()

    async def list_compute_resources(self, resource_group: str) -> list[ResourceDescriptor]:
        self.calls.append(("list", resource_group))
        if self.fail_list:
            raise RuntimeError("list failed")
        return list(self.resources.values())

    async def delete_compute_resource(self, resource: ResourceDescriptor) -> None:
        self.calls.append(("delete", resource.name))
        if resource.name in self.hang_delete:
            await asyncio.sleep(3600)
        if resource.name in self.fail_delete:
            raise RuntimeError(f"delete of {resource.name} failed")
        self.resources.pop(resource.name, None)

    async def create_compute_resource(self, spec: ComputeResourceSpec) -> ResourceDescriptor:
        self.calls.append(("create", spec.name))
        if spec.name in self.fail_create:
            raise RuntimeError(f"create of {spec.name} failed")
        created = ResourceDescriptor(
            id=f"/subscriptions/0000/resourceGroups/{spec.resource_group}/vm/{spec.name}",
            name=spec.name,
            kind=spec.kind,
            resource_group=spec.resource_group,
            location=spec.location,
            os_type=spec.os_type,
            scale_set_name=spec.scale_set_name,
            tags=spec.tags,
            image_reference=spec.image_reference,
            snapshot=spec.snapshot,
        )
        self.resources[spec.name] = created
        return created

    async def ensure_resource_group(self, name: str, location: str) -> None:
        self.calls.append(("ensure_resource_group", name))

    async def image_exists(self, location: str, image: ImageReference) -> bool:
        self.calls.append(("image_exists", image.describe()))
        return image.describe() not in self.missing_images

    def mutating_calls(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] in ("delete", "create")]


class FakeScheduler:
    """In-memory NodeScheduler recording every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.hang_drain: set[str] = set()
        self.not_ready: set[str] = set()

    async def cordon_node(self, node_name: str) -> None:
        self.calls.append(("cordon", node_name))

    async def drain_node(self, node_name: str, timeout: timedelta) -> None:
        self.calls.append(("drain", node_name))
        if node_name in self.hang_drain:
            await asyncio.sleep(3600)

    async def wait_for_node_ready(self, node_name: str, version: str | None = None) -> None:
        self.calls.append(("ready", node_name))
        if node_name in self.not_ready:
            await asyncio.sleep(3600)


@pytest.fixture
def api_model() -> dict[str, Any]:
    return make_api_model()


@pytest.fixture
def cluster_model(api_model: dict[str, Any]) -> ClusterModel:
    return ClusterModel.model_validate(api_model)


@pytest.fixture
def fleet() -> list[ResourceDescriptor]:
    return make_fleet()


@pytest.fixture
def fake_cloud(fleet: list[ResourceDescriptor]) -> FakeCloud:
    return FakeCloud(fleet)


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def run_config_factory() -> Callable[..., RunConfig]:
    """Build RunConfigs with short timeouts suitable for tests."""

    def factory(**overrides: Any) -> RunConfig:
        values: dict[str, Any] = {
            "resource_group": RESOURCE_GROUP,
            "location": "westus2",
            "upgrade_version": "1.24.0",
            "step_timeout": timedelta(seconds=1),
            "cordon_drain_timeout": timedelta(seconds=1),
        }
        values.update(overrides)
        return RunConfig(**values)

    return factory


@pytest.fixture
def test_cluster_config(tmp_path: Any) -> ClusterConfig:
    return ClusterConfig(
        cluster_id="test-westus2",
        subscription_id="11111111-2222-3333-4444-555555555555",
        resource_group=RESOURCE_GROUP,
        location="westus2",
        api_model_path=str(tmp_path / "apimodel.json"),
        kubeconfig_path=None,
    )


# Factory fixtures for tests that build their own fleets and models.
@pytest.fixture
def resource_factory() -> Callable[..., ResourceDescriptor]:
    return make_resource


@pytest.fixture
def fleet_factory() -> Callable[..., list[ResourceDescriptor]]:
    return make_fleet


@pytest.fixture
def cloud_factory() -> type[FakeCloud]:
    return FakeCloud


@pytest.fixture
def api_model_factory() -> Callable[..., dict[str, Any]]:
    return make_api_model


@pytest.fixture
def model_factory() -> Callable[..., ClusterModel]:
    def factory(**kwargs: Any) -> ClusterModel:
        return ClusterModel.model_validate(make_api_model(**kwargs))

    return factory
