"""Pre-run checks and fixups applied to the cluster model before an upgrade."""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, NamedTuple

import structlog

from cluster_upgrade.clients import CloudResourceClient
from cluster_upgrade.config import AZURE_STACK_CORDON_DRAIN_TIMEOUT, RunConfig, normalize_azure_region
from cluster_upgrade.errors import CloudAPIError, ConfigurationError, ImageNotAvailable, LocationMismatch
from cluster_upgrade.models import CloudEndpoints, ClusterModel, ImageReference, KubernetesConfig, WindowsProfile
from cluster_upgrade.versions import is_version_less

log = structlog.get_logger()

CLUSTER_INIT_COMPONENT = "cluster-init"
UBUNTU_2004 = "aks-ubuntu-20.04"
_RETIRED_AZURE_STACK_DISTROS = ("aks-ubuntu-16.04", "aks-ubuntu-18.04")
BASE_IMAGE_CHECK_TIMEOUT = timedelta(seconds=30)

# Marketplace images behind the distro names a profile may carry. Profiles with an
# explicit image reference boot from that instead.
DISTRO_IMAGES = {
    UBUNTU_2004: ImageReference(
        publisher="microsoft-aks", offer="aks", sku="aks-engine-ubuntu-2004-202208", version="2022.08.29"
    ),
    "ubuntu-20.04": ImageReference(
        publisher="Canonical", offer="0001-com-ubuntu-server-focal", sku="20_04-lts", version="latest"
    ),
    "ubuntu-18.04": ImageReference(publisher="Canonical", offer="UbuntuServer", sku="18.04-LTS", version="latest"),
}
DEFAULT_DISTRO = UBUNTU_2004
_PORTAL_PREFIX = "https://portal."


class WindowsImage(NamedTuple):
    publisher: str
    offer: str
    sku: str
    version: str
    sku_marker: str | None = None


# Refreshed images, checked in order. An entry with a sku_marker only applies
# when the profile's current SKU contains that marker.
WINDOWS_IMAGE_CATALOGUE = (
    WindowsImage("microsoft-aks", "aks-windows", "2019-datacenter-core-ctrd-2301", "17763.3887.230111", "ctrd"),
    WindowsImage(
        "microsoft-aks", "aks-windows", "2019-datacenter-core-smalldisk-2301", "17763.3887.230111", "smalldisk"
    ),
    WindowsImage(
        "MicrosoftWindowsServer", "WindowsServer", "2019-Datacenter-Core-with-Containers-smalldisk", "17763.3887.230107"
    ),
)


@dataclass
class Preparation:
    """The run config to use and what must be undone once the run ends."""

    config: RunConfig
    cluster_init_disabled: bool = False


def prepare_model(model: ClusterModel, config: RunConfig) -> Preparation:
    """Validate the model for upgrade and apply the pre-run fixups in place.

    Raises:
        ConfigurationError: If the model describes a cluster that cannot be upgraded.
        LocationMismatch: If the requested location differs from the model's.
    """
    properties = model.properties
    if properties.master_profile.availability_profile == "VirtualMachineScaleSets":
        raise ConfigurationError("clusters with a VMSS control plane are not upgradable", stage="configuration")

    k8s_config = properties.orchestrator_profile.kubernetes_config
    if (
        k8s_config is not None
        and k8s_config.enable_encryption_with_external_kms
        and k8s_config.use_managed_identity
        and not k8s_config.user_assigned_id
    ):
        msg = "clusters with enableEncryptionWithExternalKms=true and system-assigned identity are not upgradable"
        raise ConfigurationError(msg, stage="configuration")

    if not model.location:
        model.location = config.location
    elif normalize_azure_region(model.location) != config.location:
        msg = f"location {config.location} does not match api model location {model.location}"
        raise LocationMismatch(msg, stage="validation")

    if properties.is_azure_stack_cloud() and config.cordon_drain_timeout is None:
        config = dataclasses.replace(config, cordon_drain_timeout=AZURE_STACK_CORDON_DRAIN_TIMEOUT)

    if config.upgrade_windows_vhd and properties.windows_profile is not None:
        refresh_windows_image(properties.windows_profile)

    if properties.custom_cloud_profile is not None:
        _apply_custom_cloud_defaults(properties.custom_cloud_profile)

    if properties.is_azure_stack_cloud():
        _apply_azure_stack_fixups(model, config.upgrade_version)

    cluster_init_disabled = False
    if k8s_config is not None:
        i = k8s_config.component_index(CLUSTER_INIT_COMPONENT)
        if i > -1 and k8s_config.components[i].is_enabled():
            k8s_config.components[i].enabled = False
            cluster_init_disabled = True
            log.info("cluster_init_component_disabled")

    return Preparation(config=config, cluster_init_disabled=cluster_init_disabled)


def restore_model(model: ClusterModel, preparation: Preparation) -> None:
    """Undo the temporary fixups before the model is saved."""
    if not preparation.cluster_init_disabled:
        return
    k8s_config = model.properties.orchestrator_profile.kubernetes_config
    if k8s_config is None:
        return
    i = k8s_config.component_index(CLUSTER_INIT_COMPONENT)
    if i > -1:
        k8s_config.components[i].enabled = True
        log.info("cluster_init_component_restored")


def refresh_windows_image(profile: WindowsProfile) -> bool:
    """Move a Windows profile to the catalogue SKU and version for its image family."""
    for image in WINDOWS_IMAGE_CATALOGUE:
        if (profile.windows_publisher, profile.windows_offer) != (image.publisher, image.offer):
            continue
        if image.sku_marker and image.sku_marker not in (profile.windows_sku or ""):
            continue
        profile.windows_sku = image.sku
        profile.image_version = image.version
        log.info("windows_image_refreshed", sku=image.sku, version=image.version)
        return True
    return False


def _apply_azure_stack_fixups(model: ClusterModel, upgrade_version: str) -> None:
    properties = model.properties
    if properties.master_profile.distro in _RETIRED_AZURE_STACK_DISTROS:
        log.info("distro_overwritten", pool="master", old=properties.master_profile.distro, new=UBUNTU_2004)
        properties.master_profile.distro = UBUNTU_2004
    for pool in properties.agent_pool_profiles:
        if pool.distro in _RETIRED_AZURE_STACK_DISTROS:
            log.info("distro_overwritten", pool=pool.name, old=pool.distro, new=UBUNTU_2004)
            pool.distro = UBUNTU_2004

    orchestrator = properties.orchestrator_profile
    if orchestrator.kubernetes_config is None:
        orchestrator.kubernetes_config = KubernetesConfig()
    k8s_config = orchestrator.kubernetes_config
    if not is_version_less(upgrade_version, "1.21.0") and not k8s_config.use_cloud_controller_manager:
        log.info("cloud_controller_manager_enforced", version=upgrade_version)
        k8s_config.use_cloud_controller_manager = True
    if (k8s_config.container_runtime or "").lower() == "docker" and not is_version_less(upgrade_version, "1.24.0"):
        log.info("container_runtime_overwritten", old=k8s_config.container_runtime, new="containerd")
        k8s_config.container_runtime = "containerd"


def _apply_custom_cloud_defaults(profile: dict[str, Any]) -> None:
    """Fill the custom cloud fields an upgrade relies on, deriving endpoints from the portal URL."""
    environment = profile.get("environment") or {}
    if not environment.get("resourceManagerEndpoint"):
        portal = profile.get("portalURL") or ""
        if not portal.startswith(_PORTAL_PREFIX):
            msg = "customCloudProfile needs environment.resourceManagerEndpoint or an https://portal.<domain> portalURL"
            raise ConfigurationError(msg, stage="configuration")
        environment["resourceManagerEndpoint"] = "https://management." + portal.removeprefix(_PORTAL_PREFIX)
        log.info("custom_cloud_endpoint_derived", endpoint=environment["resourceManagerEndpoint"])
    environment.setdefault("name", "AzureStackCloud")
    profile["environment"] = environment
    profile.setdefault("identitySystem", "azure_ad")
    profile.setdefault("authenticationMethod", "client_secret")


def custom_cloud_endpoints(model: ClusterModel) -> CloudEndpoints | None:
    """Endpoints to reach a custom cloud, or None for public Azure."""
    profile = model.properties.custom_cloud_profile
    if not profile:
        return None
    environment = profile.get("environment") or {}
    if not environment.get("resourceManagerEndpoint"):
        return None
    authority = environment.get("activeDirectoryEndpoint")
    if authority and profile.get("identitySystem") == "adfs":
        authority = authority.rstrip("/") + "/adfs"
    return CloudEndpoints(
        name=environment.get("name") or "AzureStackCloud",
        resource_manager=environment["resourceManagerEndpoint"],
        authority=authority,
        token_audience=environment.get("tokenAudience") or environment.get("serviceManagementEndpoint"),
    )


def required_images(model: ClusterModel) -> list[ImageReference]:
    """Marketplace images the cluster's VMs boot from, without duplicates.

    Gallery and managed images are not published per location and are left out.
    """
    properties = model.properties
    profiles = [(properties.master_profile.image_reference, properties.master_profile.distro, False)]
    profiles += [(pool.image_reference, pool.distro, pool.is_windows) for pool in properties.agent_pool_profiles]

    images: dict[str, ImageReference] = {}
    for image, distro, windows in profiles:
        if image is None and windows:
            windows_profile = properties.windows_profile
            if windows_profile is None or not windows_profile.windows_publisher:
                continue
            image = ImageReference(
                publisher=windows_profile.windows_publisher,
                offer=windows_profile.windows_offer,
                sku=windows_profile.windows_sku,
                version=windows_profile.image_version,
            )
        elif image is None:
            image = DISTRO_IMAGES.get(distro or DEFAULT_DISTRO)
        if image is None or image.name:
            continue
        images.setdefault(image.describe(), image)
    return list(images.values())


async def validate_base_images(
    cloud: CloudResourceClient,
    location: str,
    model: ClusterModel,
    timeout: timedelta = BASE_IMAGE_CHECK_TIMEOUT,
) -> None:
    """Check that every OS image the cluster boots from exists in ``location``.

    Raises:
        ImageNotAvailable: If an image is not published in the target cloud.
        CloudAPIError: If the image catalogue could not be queried in time.
    """
    images = required_images(model)
    try:
        found = await asyncio.wait_for(
            asyncio.gather(*(cloud.image_exists(location, image) for image in images)),
            timeout=timeout.total_seconds(),
        )
    except TimeoutError as exc:
        msg = f"timed out after {timeout} checking OS base images in {location}"
        raise CloudAPIError(msg, stage="validation") from exc
    except Exception as exc:
        msg = f"failed to check OS base images in {location}: {exc}"
        raise CloudAPIError(msg, stage="validation") from exc

    missing = [image.describe() for image, exists in zip(images, found, strict=True) if not exists]
    if missing:
        msg = f"OS base image not available in target cloud: {', '.join(missing)}"
        raise ImageNotAvailable(msg, stage="validation")
    log.info("base_images_validated", location=location, images=[image.describe() for image in images])
