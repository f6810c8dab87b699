"""Tests for client initialization and lazy API loading."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from cluster_upgrade.clients import load_k8s_api_client_from_content
from cluster_upgrade.clients.azure_compute import AzureComputeClient
from cluster_upgrade.clients.k8s_core import K8sCoreClient
from cluster_upgrade.models import CloudEndpoints

KUBECONFIG = """
apiVersion: v1
kind: Config
clusters: []
contexts: []
users: []
"""


class TestK8sCoreClientInit:
    def test_lazy_api_creation(self) -> None:
        client = K8sCoreClient(kubeconfig_path="/tmp/kubeconfig")
        assert client._api is None

    def test_get_api_creates_once(self) -> None:
        client = K8sCoreClient(kubeconfig_path="/tmp/kubeconfig")
        with patch("cluster_upgrade.clients.k8s_core.load_k8s_api_client") as mock_load:
            mock_load.return_value = MagicMock()
            api1 = client._get_api()
            api2 = client._get_api()
        assert api1 is api2
        mock_load.assert_called_once_with("/tmp/kubeconfig")

    def test_content_takes_precedence_over_path(self) -> None:
        client = K8sCoreClient(kube_config=KUBECONFIG, kubeconfig_path="/tmp/kubeconfig")
        with (
            patch("cluster_upgrade.clients.k8s_core.load_k8s_api_client_from_content") as from_content,
            patch("cluster_upgrade.clients.k8s_core.load_k8s_api_client") as from_path,
        ):
            from_content.return_value = MagicMock()
            client._get_api()
        from_content.assert_called_once_with(KUBECONFIG)
        from_path.assert_not_called()


class TestLoadFromContent:
    def test_parses_yaml_into_isolated_client(self) -> None:
        with patch("cluster_upgrade.clients.new_client_from_config_dict") as new_client:
            load_k8s_api_client_from_content(KUBECONFIG)
        config_dict = new_client.call_args.args[0]
        assert config_dict["kind"] == "Config"

    def test_rejects_non_mapping(self) -> None:
        with pytest.raises(ValueError, match="not a YAML mapping"):
            load_k8s_api_client_from_content("- just\n- a list\n")


class TestAzureComputeClientInit:
    def test_lazy_client_creation(self) -> None:
        client = AzureComputeClient("11111111-2222-3333-4444-555555555555")
        assert client._compute_client is None
        assert client._resource_client is None

    def test_clients_share_one_credential(self) -> None:
        client = AzureComputeClient("11111111-2222-3333-4444-555555555555")
        with (
            patch("cluster_upgrade.clients.azure_compute.DefaultAzureCredential") as mock_cred,
            patch("cluster_upgrade.clients.azure_compute.ComputeManagementClient") as mock_compute,
            patch("cluster_upgrade.clients.azure_compute.ResourceManagementClient") as mock_resource,
        ):
            compute1 = client._get_compute_client()
            compute2 = client._get_compute_client()
            client._get_resource_client()
        assert compute1 is compute2
        mock_cred.assert_called_once()
        mock_compute.assert_called_once_with(
            credential=mock_cred.return_value, subscription_id="11111111-2222-3333-4444-555555555555"
        )
        mock_resource.assert_called_once()

    def test_injected_credential_is_used(self) -> None:
        credential = MagicMock()
        client = AzureComputeClient("11111111-2222-3333-4444-555555555555", credential=credential)
        with (
            patch("cluster_upgrade.clients.azure_compute.DefaultAzureCredential") as mock_cred,
            patch("cluster_upgrade.clients.azure_compute.ComputeManagementClient") as mock_compute,
        ):
            client._get_compute_client()
        mock_cred.assert_not_called()
        assert mock_compute.call_args.kwargs["credential"] is credential

    def test_custom_cloud_endpoints(self) -> None:
        cloud = CloudEndpoints(
            resource_manager="https://management.local.azurestack.external/",
            authority="https://adfs.local.azurestack.external/adfs",
        )
        client = AzureComputeClient("11111111-2222-3333-4444-555555555555", cloud=cloud)
        with (
            patch("cluster_upgrade.clients.azure_compute.DefaultAzureCredential") as mock_cred,
            patch("cluster_upgrade.clients.azure_compute.ComputeManagementClient") as mock_compute,
            patch("cluster_upgrade.clients.azure_compute.ResourceManagementClient") as mock_resource,
        ):
            client._get_compute_client()
            client._get_resource_client()
        mock_cred.assert_called_once_with(authority="https://adfs.local.azurestack.external/adfs")
        for mock_client in (mock_compute, mock_resource):
            kwargs = mock_client.call_args.kwargs
            assert kwargs["base_url"] == "https://management.local.azurestack.external/"
            assert kwargs["credential_scopes"] == ["https://management.local.azurestack.external/.default"]
