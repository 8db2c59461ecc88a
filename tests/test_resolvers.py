"""
Tests for entity resolvers: VM lookups, waits, task polling and isolated network resolution.
"""

import pytest

from surebackup.services.api.entities import PowerState, TaskHandle, TaskState
from surebackup.services.hypervisor import (
    AddressTimeoutError,
    AmbiguousEntityError,
    EntityNotFoundError,
    NetworkResolutionError,
    NetworkResolver,
    PowerStateTimeoutError,
    TaskFailedError,
    TaskTimeoutError,
    TaskWaiter,
    rank_isolated_networks,
)
from surebackup.services.hypervisor.networks import rank_key


class TestVmResolver:

    def test_find_by_name_is_exact(self, fake_adapter, vm_resolver):
        fake_adapter.add_vm("vm-1", "web01")
        fake_adapter.add_vm("vm-2", "web01-old")

        assert vm_resolver.find_vm_by_name("web01").id == "vm-1"

    def test_find_by_name_not_found(self, vm_resolver):
        with pytest.raises(EntityNotFoundError):
            vm_resolver.find_vm_by_name("missing")

    def test_find_by_name_ambiguous(self, fake_adapter, vm_resolver):
        fake_adapter.add_vm("vm-1", "web01")
        fake_adapter.add_vm("vm-2", "web01")

        with pytest.raises(AmbiguousEntityError) as exc_info:
            vm_resolver.find_vm_by_name("web01")

        assert exc_info.value.candidates == ["vm-1", "vm-2"]

    def test_get_vm_returns_version(self, fake_adapter, vm_resolver):
        fake_adapter.add_vm("vm-1", "web01")

        assert vm_resolver.get_vm("vm-1").version == "etag-1"

    def test_set_power_state_is_noop_when_already_there(self, fake_adapter, vm_resolver):
        fake_adapter.add_vm("vm-1", "web01", power_state=PowerState.ON)

        assert vm_resolver.set_power_state("vm-1", PowerState.ON) is None
        assert fake_adapter.count("mutate") == 0

    def test_set_power_state_waits_for_the_given_timeout(self, fake_adapter, vm_resolver, completed_task, clock):
        fake_adapter.add_vm("vm-1", "web01", power_state=PowerState.OFF)
        fake_adapter.tasks["t-power"] = completed_task("t-power", TaskState.RUNNING)
        fake_adapter.mutate = lambda kind, body, entity_id=None, current=None: TaskHandle("t-power")

        with pytest.raises(TaskTimeoutError):
            vm_resolver.set_power_state("vm-1", PowerState.ON, timeout=10)

        assert clock.sleeps == [5, 5]

    def test_wait_for_power_state_times_out(self, fake_adapter, vm_resolver, clock):
        fake_adapter.add_vm("vm-1", "web01", power_state=PowerState.OFF)

        with pytest.raises(PowerStateTimeoutError) as exc_info:
            vm_resolver.wait_for_power_state("vm-1", PowerState.ON, timeout=30)

        assert exc_info.value.last_state == "OFF"
        assert clock.now == 30

    def test_wait_for_ip_ignores_link_local(self, fake_adapter, vm_resolver):
        fake_adapter.add_vm("vm-1", "web01", ips=["169.254.10.1", "10.0.1.50"])

        assert vm_resolver.wait_for_ip_address("vm-1", timeout=10) == "10.0.1.50"

    def test_wait_for_ip_times_out(self, fake_adapter, vm_resolver):
        fake_adapter.add_vm("vm-1", "web01", ips=["169.254.10.1"])

        with pytest.raises(AddressTimeoutError):
            vm_resolver.wait_for_ip_address("vm-1", timeout=10)

    def test_delete_missing_vm_counts_as_deleted(self, vm_resolver):
        assert vm_resolver.delete_vm("vm-gone") is False


class TestTaskWaiter:

    def test_waits_until_terminal(self, fake_adapter, poller, completed_task, clock):
        states = iter([TaskState.QUEUED, TaskState.RUNNING, TaskState.SUCCEEDED])
        fake_adapter.get = lambda kind, task_id: completed_task(task_id, next(states))

        task = TaskWaiter(fake_adapter, poller).wait(TaskHandle("t-1"), timeout=60)

        assert task.state == TaskState.SUCCEEDED
        assert clock.sleeps == [5, 5]

    def test_failure_carries_server_detail(self, fake_adapter, poller, completed_task):
        fake_adapter.tasks["t-1"] = completed_task("t-1", TaskState.FAILED, error="quota exceeded")

        with pytest.raises(TaskFailedError) as exc_info:
            TaskWaiter(fake_adapter, poller).wait(TaskHandle("t-1"))

        assert exc_info.value.detail == "quota exceeded"

    def test_timeout_carries_handle(self, fake_adapter, poller, completed_task, clock):
        fake_adapter.tasks["t-1"] = completed_task("t-1", TaskState.RUNNING)
        handle = TaskHandle("t-1", "restore")

        with pytest.raises(TaskTimeoutError) as exc_info:
            TaskWaiter(fake_adapter, poller).wait(handle, timeout=12)

        assert exc_info.value.handle == handle
        assert exc_info.value.last_state == "RUNNING"
        # Deadline computed once: 5 + 5 + 2
        assert clock.sleeps == [5, 5, 2]


class TestNetworkRanking:

    def test_pattern_order_wins(self, fake_adapter):
        lab = fake_adapter.add_subnet("n1", "lab-net")
        isolated = fake_adapter.add_subnet("n2", "isolated-net")

        ranked = rank_isolated_networks([lab, isolated], ["isolated", "lab"])

        assert [n.id for _, n in ranked] == ["n2", "n1"]

    def test_whole_word_beats_substring(self):
        assert rank_key("lab-net", ["lab"]) < rank_key("collaboration", ["lab"])

    def test_unmatched_name_has_no_rank(self):
        assert rank_key("production", ["isolated", "lab"]) is None


class TestNetworkResolver:

    def test_explicit_id_wins_over_name(self, network_resolver):
        network, warnings = network_resolver.resolve_isolated_network(network_id="net-prod", name="whatever")

        assert network.id == "net-prod"
        assert warnings == []

    def test_unknown_id_fails_with_remediation(self, network_resolver):
        with pytest.raises(NetworkResolutionError, match="ISOLATED_NETWORK_ID"):
            network_resolver.resolve_isolated_network(network_id="net-missing")

    def test_explicit_name(self, network_resolver):
        network, _ = network_resolver.resolve_isolated_network(name="surebackup-isolated")

        assert network.id == "net-iso"
        assert network.vlan_id == 999

    def test_auto_detect_warns(self, network_resolver):
        network, warnings = network_resolver.resolve_isolated_network()

        assert network.id == "net-iso"
        assert len(warnings) == 1
        assert "auto-detected" in warnings[0]

    def test_auto_detect_ambiguous(self, fake_adapter, network_resolver):
        fake_adapter.add_subnet("net-iso-2", "isolated-b")
        fake_adapter.subnets["net-iso"].name = "isolated-a"

        with pytest.raises(NetworkResolutionError, match="ambiguous"):
            network_resolver.resolve_isolated_network()

    def test_auto_detect_nothing_matches(self, fake_adapter, vm_resolver):
        fake_adapter.subnets.pop("net-iso")

        with pytest.raises(NetworkResolutionError, match="ISOLATED_NETWORK_NAME"):
            NetworkResolver(fake_adapter, vm_resolver).resolve_isolated_network()

    def test_overlap_with_production_is_a_warning(self, fake_adapter, network_resolver):
        fake_adapter.add_vm("vm-prod", "web01", nics=["net-iso"])
        network, _ = network_resolver.resolve_isolated_network(network_id="net-iso")

        warnings = network_resolver.verify_isolation(network, "web01")

        assert len(warnings) == 1
        assert "not isolated" in warnings[0]

    def test_restore_point_networks_are_compared(self, network_resolver):
        network, _ = network_resolver.resolve_isolated_network(network_id="net-iso")

        warnings = network_resolver.verify_isolation(network, "web01", known_network_ids=["net-iso"])

        assert len(warnings) == 1

    def test_lookup_failure_is_a_warning(self, fake_adapter, network_resolver):
        network, _ = network_resolver.resolve_isolated_network(network_id="net-iso")

        def broken_list(kind, entity_filter=None):
            raise EntityNotFoundError("lookup broke")

        fake_adapter.list = broken_list
        warnings = network_resolver.verify_isolation(network, "web01")

        assert len(warnings) == 1
        assert "Could not look up" in warnings[0]

    def test_isolated_network_passes(self, fake_adapter, network_resolver):
        fake_adapter.add_vm("vm-prod", "web01", nics=["net-prod"])
        network, _ = network_resolver.resolve_isolated_network(network_id="net-iso")

        assert network_resolver.verify_isolation(network, "web01", ["net-prod"]) == []
