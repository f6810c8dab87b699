"""Tests for the node naming conventions and the pool matcher."""

from __future__ import annotations

import pytest

from cluster_upgrade.models import AgentPoolProfile
from cluster_upgrade.naming import (
    belongs_to_cluster,
    control_plane_index,
    format_linux_vm_name,
    format_vmss_name,
    format_windows_vm_name,
    is_windows_vmss_instance,
    matches_pool,
    parse_linux_vm_name,
    parse_vmss_name,
    parse_windows_vm_name,
)

SUFFIX = "38912981"

LINUX_VMSS = AgentPoolProfile(name="pool1", os_type="Linux", availability_profile="VirtualMachineScaleSets")
WINDOWS_VMSS = AgentPoolProfile(name="winpool", os_type="Windows", availability_profile="VirtualMachineScaleSets")
LINUX_VMS = AgentPoolProfile(name="agentpool", os_type="Linux", availability_profile="AvailabilitySet")
WINDOWS_VMS = AgentPoolProfile(name="winvms", os_type="Windows", availability_profile="AvailabilitySet")


class TestScaleSetNames:
    def test_parse_instance_name(self) -> None:
        parts = parse_vmss_name("k8s-pool1-38912981-vmss000002")
        assert parts is not None
        assert parts.pool_name == "pool1"
        assert parts.name_suffix == "38912981"
        assert parts.instance_index == 2

    def test_parse_scale_set_name(self) -> None:
        parts = parse_vmss_name("k8s-pool1-38912981-vmss")
        assert parts is not None
        assert parts.instance_index is None

    def test_pool_name_with_hyphen(self) -> None:
        parts = parse_vmss_name("k8s-linux-pool-38912981-vmss000010")
        assert parts is not None
        assert parts.pool_name == "linux-pool"

    def test_format_is_reversible(self) -> None:
        name = format_vmss_name("pool1", SUFFIX, 2)
        assert name == "k8s-pool1-38912981-vmss000002"
        parts = parse_vmss_name(name)
        assert parts is not None
        assert (parts.pool_name, parts.name_suffix, parts.instance_index) == ("pool1", SUFFIX, 2)

    def test_unstructured_name_returns_none(self) -> None:
        assert parse_vmss_name("0123k8s009000") is None

    def test_windows_instance_pattern(self) -> None:
        assert is_windows_vmss_instance("0123k8s009000")
        assert not is_windows_vmss_instance("k8s-pool1-38912981-vmss000002")


class TestDiscreteVMNames:
    def test_parse_linux_agent(self) -> None:
        parts = parse_linux_vm_name("k8s-agentpool-38912981-1")
        assert parts is not None
        assert (parts.pool_name, parts.name_suffix, parts.index) == ("agentpool", SUFFIX, 1)

    def test_linux_format_round_trip(self) -> None:
        parts = parse_linux_vm_name(format_linux_vm_name("agentpool", SUFFIX, 4))
        assert parts is not None
        assert parts.index == 4

    def test_parse_windows_current_format(self) -> None:
        parts = parse_windows_vm_name("3891k8s01100")
        assert parts is not None
        assert parts.prefix == "3891"
        assert parts.pool_identifier == "3891k8s01"
        assert parts.pool_index == 1
        assert parts.index == 100

    def test_parse_windows_legacy_format(self) -> None:
        parts = parse_windows_vm_name("38912k8s9010")
        assert parts is not None
        assert parts.prefix == "38912"
        assert parts.pool_identifier == "38912k8s901"
        assert parts.pool_index == 1
        assert parts.index == 0

    def test_windows_format(self) -> None:
        assert format_windows_vm_name(SUFFIX, 1, 100) == "3891k8s01100"

    def test_control_plane_index(self) -> None:
        assert control_plane_index("k8s-master-38912981-2") == 2
        assert control_plane_index("k8s-pool1-38912981-2") is None
        assert control_plane_index("k8s-master-38912981-vmss000001") is None


class TestBelongsToCluster:
    def test_full_suffix(self) -> None:
        assert belongs_to_cluster("k8s-pool1-38912981-vmss000002", SUFFIX)

    def test_windows_short_suffix(self) -> None:
        assert belongs_to_cluster("3891k8s01100", SUFFIX)
        assert belongs_to_cluster("38912k8s9010", SUFFIX)

    def test_other_cluster(self) -> None:
        assert not belongs_to_cluster("k8s-pool1-12345678-vmss000002", SUFFIX)
        assert not belongs_to_cluster("0123k8s009000", SUFFIX)

    def test_empty_suffix_matches_nothing(self) -> None:
        assert not belongs_to_cluster("k8s-pool1-38912981-vmss000002", "")


class TestMatchesPool:
    def test_linux_vmss_instance_matches_its_pool(self) -> None:
        assert matches_pool("k8s-pool1-38912981-vmss000002", LINUX_VMSS)

    def test_windows_pattern_does_not_match_linux_pool(self) -> None:
        assert not matches_pool("0123k8s009000", LINUX_VMSS)

    def test_windows_pattern_matches_windows_pool(self) -> None:
        assert matches_pool("0123k8s009000", WINDOWS_VMSS)

    def test_linux_structured_name_does_not_match_windows_pool(self) -> None:
        assert not matches_pool("k8s-pool1-38912981-vmss000002", WINDOWS_VMSS)

    def test_vmss_pool_name_must_match(self) -> None:
        assert not matches_pool("k8s-pool2-38912981-vmss000002", LINUX_VMSS)

    def test_vmss_suffix_checked_when_given(self) -> None:
        assert matches_pool("k8s-pool1-38912981-vmss000002", LINUX_VMSS, name_suffix=SUFFIX)
        assert not matches_pool("k8s-pool1-12345678-vmss000002", LINUX_VMSS, name_suffix=SUFFIX)

    def test_windows_vmss_prefix_checked_when_given(self) -> None:
        assert matches_pool("3891k8s000000", WINDOWS_VMSS, name_suffix=SUFFIX)
        assert not matches_pool("0123k8s009000", WINDOWS_VMSS, name_suffix=SUFFIX)

    def test_discrete_linux(self) -> None:
        assert matches_pool("k8s-agentpool-38912981-0", LINUX_VMS, name_suffix=SUFFIX)
        assert not matches_pool("k8s-otherpool-38912981-0", LINUX_VMS, name_suffix=SUFFIX)

    def test_discrete_linux_rejects_scale_set_instances(self) -> None:
        assert not matches_pool("k8s-agentpool-38912981-vmss000000", LINUX_VMS)

    def test_discrete_windows_pool_index(self) -> None:
        assert matches_pool("3891k8s01100", WINDOWS_VMS, name_suffix=SUFFIX, pool_index=1)
        assert not matches_pool("3891k8s01100", WINDOWS_VMS, name_suffix=SUFFIX, pool_index=0)

    @pytest.mark.parametrize(
        "name",
        ["k8s-pool1-38912981-vmss000002", "0123k8s009000", "", "k8s-master-38912981-0", "garbage"],
    )
    @pytest.mark.parametrize("pool", [LINUX_VMSS, WINDOWS_VMSS, LINUX_VMS, WINDOWS_VMS])
    def test_deterministic(self, name: str, pool: AgentPoolProfile) -> None:
        results = {matches_pool(name, pool, name_suffix=SUFFIX) for _ in range(3)}
        assert len(results) == 1
