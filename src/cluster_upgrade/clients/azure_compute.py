"""Azure compute and resource management wrapper: list, delete and recreate cluster VMs."""

from __future__ import annotations

import asyncio
import re
import threading
from typing import Any

import structlog
from azure.core.exceptions import ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.compute.models import (
    ImageReference as AzureImageReference,
)
from azure.mgmt.compute.models import (
    VirtualMachine,
    VirtualMachineScaleSetVMInstanceRequiredIDs,
)
from azure.mgmt.resource import ResourceManagementClient

from cluster_upgrade.models import CloudEndpoints, ComputeResourceSpec, ImageReference, ResourceDescriptor

log = structlog.get_logger()

# Read-only properties reported on a VM that cannot be sent back on create.
_READ_ONLY_VM_KEYS = ("id", "type", "provisioning_state", "instance_view", "vm_id", "resources", "time_created")


class AzureComputeClient:
    """Cloud resource client backed by the Azure compute and resource management APIs.

    When ``cloud`` is given the clients talk to that cloud's Resource Manager
    endpoint and authenticate against its authority instead of public Azure.
    """

    def __init__(
        self, subscription_id: str, credential: Any | None = None, cloud: CloudEndpoints | None = None
    ) -> None:
        self._subscription_id = subscription_id
        self._credential = credential
        self._cloud = cloud
        self._compute_client: ComputeManagementClient | None = None
        self._resource_client: ResourceManagementClient | None = None
        # RLock because the client getters call _get_credential while holding it.
        self._lock = threading.RLock()

    def _get_credential(self) -> Any:
        with self._lock:
            if self._credential is None:
                if self._cloud is not None and self._cloud.authority:
                    self._credential = DefaultAzureCredential(authority=self._cloud.authority)
                else:
                    self._credential = DefaultAzureCredential()
            return self._credential

    def _endpoint_kwargs(self) -> dict[str, Any]:
        if self._cloud is None:
            return {}
        return {"base_url": self._cloud.resource_manager, "credential_scopes": [self._cloud.credential_scope]}

    def _get_compute_client(self) -> ComputeManagementClient:
        with self._lock:
            if self._compute_client is None:
                self._compute_client = ComputeManagementClient(
                    credential=self._get_credential(),
                    subscription_id=self._subscription_id,
                    **self._endpoint_kwargs(),
                )
            return self._compute_client

    def _get_resource_client(self) -> ResourceManagementClient:
        with self._lock:
            if self._resource_client is None:
                self._resource_client = ResourceManagementClient(
                    credential=self._get_credential(),
                    subscription_id=self._subscription_id,
                    **self._endpoint_kwargs(),
                )
            return self._resource_client

    async def ensure_resource_group(self, name: str, location: str) -> None:
        """Create the resource group if it does not exist yet."""
        client = self._get_resource_client()
        try:
            exists = await asyncio.to_thread(client.resource_groups.check_existence, name)
            if not exists:
                await asyncio.to_thread(client.resource_groups.create_or_update, name, {"location": location})
                log.info("resource_group_created", resource_group=name, location=location)
        except Exception:
            log.error("failed_to_ensure_resource_group", resource_group=name)
            raise

    async def image_exists(self, location: str, image: ImageReference) -> bool:
        """Report whether a marketplace image is published in ``location``.

        An image without a version (or ``latest``) exists when any version does.
        """
        client = self._get_compute_client()
        try:
            return await asyncio.to_thread(self._image_exists, client, location, image)
        except Exception:
            log.error("failed_to_check_image", image=image.describe(), location=location)
            raise

    def _image_exists(self, client: ComputeManagementClient, location: str, image: ImageReference) -> bool:
        images = client.virtual_machine_images
        try:
            if not image.version or image.version == "latest":
                return bool(images.list(location, image.publisher, image.offer, image.sku, top=1))
            images.get(location, image.publisher, image.offer, image.sku, image.version)
        except ResourceNotFoundError:
            return False
        return True

    async def list_compute_resources(self, resource_group: str) -> list[ResourceDescriptor]:
        """List discrete VMs and scale set instances in a resource group."""
        client = self._get_compute_client()
        try:
            return await asyncio.to_thread(self._list_resources, client, resource_group)
        except Exception:
            log.error("failed_to_list_compute_resources", resource_group=resource_group)
            raise

    def _list_resources(self, client: ComputeManagementClient, resource_group: str) -> list[ResourceDescriptor]:
        """Synchronous helper that walks the VM and scale set paginators."""
        resources = [_vm_descriptor(vm, resource_group) for vm in client.virtual_machines.list(resource_group)]
        for scale_set in client.virtual_machine_scale_sets.list(resource_group):
            for vm in client.virtual_machine_scale_set_vms.list(resource_group, scale_set.name):
                resources.append(_vmss_vm_descriptor(vm, resource_group, scale_set.name))
        return resources

    async def delete_compute_resource(self, resource: ResourceDescriptor) -> None:
        """Delete a VM (and its OS disk) or a scale set instance, waiting for completion."""
        client = self._get_compute_client()
        try:
            await asyncio.to_thread(self._delete, client, resource)
        except Exception:
            log.error("failed_to_delete_compute_resource", resource=resource.name)
            raise
        log.info("compute_resource_deleted", resource=resource.name, kind=resource.kind)

    def _delete(self, client: ComputeManagementClient, resource: ResourceDescriptor) -> None:
        if resource.kind == "vmss_instance":
            instance_ids = VirtualMachineScaleSetVMInstanceRequiredIDs(instance_ids=[resource.instance_id])
            client.virtual_machine_scale_sets.begin_delete_instances(
                resource.resource_group, resource.scale_set_name, instance_ids
            ).result()
            return

        client.virtual_machines.begin_delete(resource.resource_group, resource.name).result()
        # The NIC is kept for the replacement VM; the OS disk is recreated from the image.
        os_disk = resource.snapshot.get("storage_profile", {}).get("os_disk", {})
        disk_name = os_disk.get("name")
        if disk_name and os_disk.get("managed_disk"):
            client.disks.begin_delete(resource.resource_group, disk_name).result()

    async def create_compute_resource(self, spec: ComputeResourceSpec) -> ResourceDescriptor:
        """Create a replacement resource from the decommissioned resource's snapshot."""
        client = self._get_compute_client()
        try:
            if spec.kind == "vmss_instance":
                created = await asyncio.to_thread(self._scale_out, client, spec)
            else:
                created = await asyncio.to_thread(self._create_vm, client, spec)
        except Exception:
            log.error("failed_to_create_compute_resource", resource=spec.name, pool=spec.pool_name)
            raise
        log.info("compute_resource_created", resource=created.name, pool=spec.pool_name)
        return created

    def _create_vm(self, client: ComputeManagementClient, spec: ComputeResourceSpec) -> ResourceDescriptor:
        params = {k: v for k, v in spec.snapshot.items() if k not in _READ_ONLY_VM_KEYS}
        params["location"] = spec.location
        params["tags"] = {**params.get("tags", {}), **spec.tags}
        storage = dict(params.get("storage_profile", {}))
        if spec.image_reference is not None:
            storage["image_reference"] = _azure_image(spec.image_reference, self._subscription_id).as_dict()
        os_disk = {k: v for k, v in storage.get("os_disk", {}).items() if k != "managed_disk"}
        os_disk["create_option"] = "FromImage"
        storage["os_disk"] = os_disk
        params["storage_profile"] = storage
        vm = client.virtual_machines.begin_create_or_update(
            spec.resource_group, spec.name, VirtualMachine.from_dict(params)
        ).result()
        return _vm_descriptor(vm, spec.resource_group)

    def _scale_out(self, client: ComputeManagementClient, spec: ComputeResourceSpec) -> ResourceDescriptor:
        scale_set = client.virtual_machine_scale_sets.get(spec.resource_group, spec.scale_set_name)
        existing = {
            vm.instance_id for vm in client.virtual_machine_scale_set_vms.list(spec.resource_group, spec.scale_set_name)
        }
        if spec.image_reference is not None:
            image = _azure_image(spec.image_reference, self._subscription_id)
            scale_set.virtual_machine_profile.storage_profile.image_reference = image
        scale_set.tags = {**(scale_set.tags or {}), **spec.tags}
        scale_set.sku.capacity = len(existing) + 1
        client.virtual_machine_scale_sets.begin_create_or_update(
            spec.resource_group, spec.scale_set_name, scale_set
        ).result()
        for vm in client.virtual_machine_scale_set_vms.list(spec.resource_group, spec.scale_set_name):
            if vm.instance_id not in existing:
                return _vmss_vm_descriptor(vm, spec.resource_group, spec.scale_set_name)
        msg = f"scale set {spec.scale_set_name} did not report a new instance after scaling out"
        raise RuntimeError(msg)


_IMAGE_ID_RE = re.compile(
    r"^/subscriptions/(?P<subscription>[^/]+)/resourceGroups/(?P<resource_group>[^/]+)"
    r"/providers/Microsoft\.Compute/(?:galleries/(?P<gallery>[^/]+)/images/(?P<gallery_image>[^/]+)"
    r"/versions/(?P<version>[^/]+)|images/(?P<image>[^/]+))$",
    re.IGNORECASE,
)


def _image_id(image: ImageReference, subscription_id: str) -> str:
    base = (
        f"/subscriptions/{image.subscription_id or subscription_id}/resourceGroups/{image.resource_group}"
        "/providers/Microsoft.Compute"
    )
    if image.gallery:
        return f"{base}/galleries/{image.gallery}/images/{image.name}/versions/{image.version or 'latest'}"
    return f"{base}/images/{image.name}"


def _azure_image(image: ImageReference, subscription_id: str) -> AzureImageReference:
    if image.name and image.resource_group:
        return AzureImageReference(id=_image_id(image, subscription_id))
    return AzureImageReference(publisher=image.publisher, offer=image.offer, sku=image.sku, version=image.version)


def _image_from_azure(image: Any) -> ImageReference | None:
    """Map an Azure image reference back onto the api model's shape."""
    if image is None:
        return None
    match = _IMAGE_ID_RE.match(image.id or "")
    if match:
        return ImageReference(
            name=match.group("gallery_image") or match.group("image"),
            resource_group=match.group("resource_group"),
            gallery=match.group("gallery"),
            version=match.group("version"),
            subscription_id=match.group("subscription"),
        )
    return ImageReference(publisher=image.publisher, offer=image.offer, sku=image.sku, version=image.version)


def _os_type(storage_profile: Any) -> str:
    os_disk = storage_profile.os_disk if storage_profile else None
    os_type = str(os_disk.os_type) if os_disk and os_disk.os_type else "Linux"
    return "Windows" if os_type.lower().endswith("windows") else "Linux"


def _vm_descriptor(vm: Any, resource_group: str) -> ResourceDescriptor:
    storage = vm.storage_profile
    return ResourceDescriptor(
        id=vm.id,
        name=vm.name,
        kind="vm",
        resource_group=resource_group,
        location=vm.location or "",
        os_type=_os_type(storage),
        computer_name=vm.os_profile.computer_name if vm.os_profile else None,
        tags=dict(vm.tags or {}),
        image_reference=_image_from_azure(storage.image_reference if storage else None),
        provisioning_state=vm.provisioning_state,
        snapshot=vm.as_dict(),
    )


def _vmss_vm_descriptor(vm: Any, resource_group: str, scale_set_name: str) -> ResourceDescriptor:
    storage = vm.storage_profile
    computer_name = vm.os_profile.computer_name if vm.os_profile else None
    return ResourceDescriptor(
        id=vm.id,
        name=computer_name or vm.name,
        kind="vmss_instance",
        resource_group=resource_group,
        location=vm.location or "",
        os_type=_os_type(storage),
        scale_set_name=scale_set_name,
        instance_id=vm.instance_id,
        computer_name=computer_name,
        tags=dict(vm.tags or {}),
        image_reference=_image_from_azure(storage.image_reference if storage else None),
        provisioning_state=vm.provisioning_state,
    )
