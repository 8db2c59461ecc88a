"""
Tests for per-generation normalization into canonical entities.
"""

import pytest

from surebackup.services.api.entities import (
    EntityKind,
    PowerState,
    TaskState,
    V3Normalizer,
    V4Normalizer,
)
from surebackup.services.api.errors import ApiResponseError


class TestV4Normalizer:

    def test_vm_fields(self):
        payload = {
            "extId": "vm-1",
            "name": "web01",
            "powerState": "ON",
            "guestTools": {"isEnabled": True},
            "cluster": {"extId": "cl-1"},
            "nics": [
                {"networkInfo": {
                    "subnet": {"extId": "net-a"},
                    "ipv4Info": {"learnedIpAddresses": [{"value": "10.0.1.50"}]},
                }},
                {"networkInfo": {
                    "subnet": {"extId": "net-b"},
                    "ipv4Config": {"ipAddress": {"value": "10.0.2.50"}},
                }},
            ],
        }

        vm = V4Normalizer().normalize(EntityKind.VM, payload, etag="etag-1")

        assert vm.id == "vm-1"
        assert vm.version == "etag-1"
        assert vm.power_state == PowerState.ON
        assert vm.guest_tools_enabled is True
        assert vm.nic_network_ids == ["net-a", "net-b"]
        assert vm.ip_addresses == ["10.0.1.50", "10.0.2.50"]
        assert vm.cluster_id == "cl-1"

    def test_task_fields(self):
        payload = {
            "extId": "task-1",
            "status": "FAILED",
            "errorMessages": [{"message": "disk full"}],
            "progressPercentage": 40,
            "entitiesAffected": [{"extId": "vm-9"}],
        }

        task = V4Normalizer().normalize(EntityKind.TASK, payload)

        assert task.state == TaskState.FAILED
        assert task.error_detail == "disk full"
        assert task.percent_complete == 40
        assert task.entity_ids == ["vm-9"]

    def test_task_keeps_affected_entity_kinds(self):
        payload = {
            "extId": "task-2",
            "status": "SUCCEEDED",
            "entitiesAffected": [
                {"extId": "cl-1", "rel": "clustermgmt:config:cluster"},
                {"extId": "vm-9", "rel": "vmm:ahv:config:vm"},
                {"extId": "disk-3"},
            ],
        }

        task = V4Normalizer().normalize(EntityKind.TASK, payload)

        assert task.entity_ids == ["cl-1", "vm-9", "disk-3"]
        assert task.entity_kinds == {"cl-1": "cluster", "vm-9": "vm", "disk-3": ""}
        assert task.entities_of_kind(EntityKind.VM) == ["vm-9"]

    def test_payload_without_id_is_rejected(self):
        with pytest.raises(ApiResponseError):
            V4Normalizer().normalize(EntityKind.VM, {"name": "ghost"})


class TestV3Normalizer:

    def test_vm_fields(self):
        payload = {
            "metadata": {"uuid": "vm-1", "spec_version": 7},
            "spec": {"name": "web01"},
            "status": {
                "name": "web01",
                "cluster_reference": {"uuid": "cl-1"},
                "resources": {
                    "power_state": "off",
                    "nic_list": [{"subnet_reference": {"uuid": "net-a"},
                                  "ip_endpoint_list": [{"ip": "10.0.1.50"}]}],
                    "guest_tools": {"nutanix_guest_tools": {"state": "ENABLED"}},
                },
            },
        }

        vm = V3Normalizer().normalize(EntityKind.VM, payload)

        assert vm.version == "7"
        assert vm.power_state == PowerState.OFF
        assert vm.nic_network_ids == ["net-a"]
        assert vm.ip_addresses == ["10.0.1.50"]
        assert vm.guest_tools_enabled is True
        assert vm.cluster_id == "cl-1"

    def test_aborted_task_is_canceled(self):
        task = V3Normalizer().normalize(EntityKind.TASK, {"uuid": "t-1", "status": "ABORTED"})

        assert task.state == TaskState.CANCELED
        assert task.state.is_terminal

    def test_task_entity_references_keep_kind(self):
        payload = {
            "uuid": "t-2",
            "status": "SUCCEEDED",
            "entity_reference_list": [
                {"uuid": "cl-1", "kind": "cluster"},
                {"uuid": "vm-9", "kind": "vm"},
            ],
        }

        task = V3Normalizer().normalize(EntityKind.TASK, payload)

        assert task.entities_of_kind(EntityKind.VM) == ["vm-9"]
        assert task.entities_of_kind(EntityKind.SUBNET) == []

    def test_subnet_fields(self):
        payload = {
            "metadata": {"uuid": "net-1"},
            "spec": {"name": "isolated", "resources": {"vlan_id": 999, "subnet_type": "VLAN"},
                     "cluster_reference": {"uuid": "cl-1"}},
        }

        subnet = V3Normalizer().normalize(EntityKind.SUBNET, payload)

        assert (subnet.name, subnet.vlan_id, subnet.cluster_id) == ("isolated", 999, "cl-1")
