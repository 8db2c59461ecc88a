"""Shared fixtures: in-process HTTP responses, fake clocks and an in-memory cluster."""

import json
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest
import requests

from surebackup.models.restore import RestorePointMetadata, RestoreTarget
from surebackup.services.api.entities import (
    EntityKind,
    PowerState,
    SubnetEntity,
    TaskEntity,
    TaskState,
    VmEntity,
)
from surebackup.services.api.errors import ApiClientError
from surebackup.services.api.transport import ApiGeneration, ApiTransport, RetryPolicy
from surebackup.services.hypervisor import NetworkResolver, Poller, TaskWaiter, VmResolver
from surebackup.services.recovery import (
    BackupCatalog,
    CatalogError,
    CleanupCoordinator,
    OrchestrationContext,
    RestoreHandle,
    SessionStateMachine,
)


def make_response(status: int = 200, body=None, headers: Optional[dict] = None,
                  url: str = "https://prism.test:9440/api") -> requests.Response:
    """Build a real requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(body).encode("utf-8") if body is not None else b""
    response.headers.update(headers or {})
    response.url = url
    response.reason = "OK" if status < 400 else "Error"
    return response


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is called."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeAdapter:
    """In-memory stand-in for a protocol adapter, safe to share between worker threads."""

    generation = ApiGeneration.V4

    def __init__(self):
        self.vms: Dict[str, VmEntity] = {}
        self.subnets: Dict[str, SubnetEntity] = {}
        self.tasks: Dict[str, TaskEntity] = {}
        self.calls: List[tuple] = []
        self.lock = threading.Lock()
        self.boot_power_state = PowerState.ON

    def add_vm(self, vm_id: str, name: str, power_state: PowerState = PowerState.OFF,
               nics=(), ips=(), guest_tools: bool = True) -> VmEntity:
        vm = VmEntity(
            kind=EntityKind.VM, id=vm_id, name=name, generation=self.generation, version="etag-1",
            power_state=power_state, nic_network_ids=list(nics), ip_addresses=list(ips),
            guest_tools_enabled=guest_tools,
        )
        with self.lock:
            self.vms[vm_id] = vm
        return vm

    def add_subnet(self, subnet_id: str, name: str, vlan_id: Optional[int] = None,
                   cluster_id: Optional[str] = None) -> SubnetEntity:
        subnet = SubnetEntity(
            kind=EntityKind.SUBNET, id=subnet_id, name=name, generation=self.generation,
            vlan_id=vlan_id, cluster_id=cluster_id,
        )
        self.subnets[subnet_id] = subnet
        return subnet

    def count(self, operation: str, kind: EntityKind = EntityKind.VM) -> int:
        return sum(1 for call in self.calls if call[0] == operation and call[1] == kind)

    def list(self, kind, entity_filter=None):
        with self.lock:
            self.calls.append(("list", kind, entity_filter))
            if kind == EntityKind.VM:
                items = list(self.vms.values())
            elif kind == EntityKind.SUBNET:
                items = list(self.subnets.values())
            else:
                items = []
        if entity_filter is not None and entity_filter.name is not None:
            items = [i for i in items if i.name == entity_filter.name]
        return [replace(i) for i in items]

    def _store(self, kind):
        return {EntityKind.VM: self.vms, EntityKind.SUBNET: self.subnets, EntityKind.TASK: self.tasks}[kind]

    def get(self, kind, entity_id):
        with self.lock:
            self.calls.append(("get", kind, entity_id))
            entity = self._store(kind).get(entity_id)
        if entity is None:
            raise ApiClientError(f"GET {kind.value} {entity_id} failed with HTTP 404", 404)
        return replace(entity)

    def mutate(self, kind, body, entity_id=None, current=None):
        with self.lock:
            self.calls.append(("mutate", kind, entity_id, dict(body)))
            vm = self.vms.get(entity_id)
            if vm is None:
                raise ApiClientError(f"PUT {kind.value} {entity_id} failed with HTTP 404", 404)
            if body.get("power_state") == PowerState.ON.value:
                vm.power_state = self.boot_power_state
            elif "power_state" in body:
                vm.power_state = PowerState(body["power_state"])
        return None

    def delete(self, kind, entity_id):
        with self.lock:
            self.calls.append(("delete", kind, entity_id))
            if self._store(kind).pop(entity_id, None) is None:
                raise ApiClientError(f"DELETE {kind.value} {entity_id} failed with HTTP 404", 404)
        return None


class FakeCatalog(BackupCatalog):
    """Backup catalog that "restores" by creating VMs in a FakeAdapter."""

    def __init__(self, adapter: FakeAdapter, targets: List[RestoreTarget],
                 production_network: str = "net-prod", fail_for=(), without_guest_tools=()):
        self.adapter = adapter
        self.targets = list(targets)
        self.production_network = production_network
        self.fail_for = set(fail_for)
        self.without_guest_tools = set(without_guest_tools)
        self.started: List[str] = []
        self.created: List[str] = []
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def list_restore_targets(self):
        return list(self.targets)

    def get_restore_point_metadata(self, restore_point_id):
        return RestorePointMetadata(restore_point_id, nic_network_ids=(self.production_network,))

    def start_restore(self, target, network, recovery_name):
        with self._lock:
            self.started.append(target.name)
            if target.name in self.fail_for:
                raise CatalogError(f"restore point {target.restore_point_id} is corrupt")
            vm_id = f"vm-{len(self.created) + 1}"
            self.created.append(vm_id)
            self.adapter.add_vm(
                vm_id, recovery_name, nics=[network.id], ips=[f"10.0.1.{50 + len(self.created)}"],
                guest_tools=target.name not in self.without_guest_tools,
            )
            in_flight = sum(1 for created in self.created if created in self.adapter.vms)
            self.max_in_flight = max(self.max_in_flight, in_flight)
        return RestoreHandle(resource_id=vm_id)


def make_target(name: str, index: int = 1) -> RestoreTarget:
    return RestoreTarget(
        name=name,
        backup_id=f"job-{index}",
        restore_point_id=f"rp-{name}",
        created_at=datetime(2026, 10, 1, 2, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def poller(clock) -> Poller:
    return Poller(interval=5, clock=clock, sleep=clock.sleep)


@pytest.fixture
def http_session() -> MagicMock:
    session = MagicMock()
    session.headers = {}
    return session


@pytest.fixture
def transport_factory(http_session, clock):
    """Build an ApiTransport whose session replays the given responses/exceptions."""

    def factory(responses, retry_count: int = 3, **kwargs) -> ApiTransport:
        http_session.request.side_effect = list(responses)
        policy = RetryPolicy(
            retry_count=retry_count,
            backoff_cap=30,
            sleep=clock.sleep,
            random_fn=lambda low, high: 0.0,
        )
        return ApiTransport(
            "https://prism.test:9440",
            username="admin",
            password="secret",
            retry_policy=policy,
            session=http_session,
            **kwargs,
        )

    return factory


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    adapter = FakeAdapter()
    adapter.add_subnet("net-iso", "surebackup-isolated", vlan_id=999)
    adapter.add_subnet("net-prod", "production", vlan_id=10)
    return adapter


@pytest.fixture
def vm_resolver(fake_adapter, poller) -> VmResolver:
    return VmResolver(fake_adapter, TaskWaiter(fake_adapter, poller, timeout=60), poller)


@pytest.fixture
def network_resolver(fake_adapter, vm_resolver) -> NetworkResolver:
    return NetworkResolver(fake_adapter, vm_resolver)


@pytest.fixture
def context() -> OrchestrationContext:
    return OrchestrationContext(run_id="20261016_020000")


@pytest.fixture
def machine(context) -> SessionStateMachine:
    return SessionStateMachine(context)


@pytest.fixture
def cleanup(context, machine, vm_resolver) -> CleanupCoordinator:
    return CleanupCoordinator(context, machine, vm_resolver)


@pytest.fixture
def targets():
    return [make_target(name, i) for i, name in enumerate(["dc01", "sql01", "web01"], start=1)]


@pytest.fixture
def catalog_factory(fake_adapter):
    def factory(targets, **kwargs) -> FakeCatalog:
        return FakeCatalog(fake_adapter, targets, **kwargs)

    return factory


@pytest.fixture
def target_factory():
    return make_target


@pytest.fixture
def completed_task():
    def factory(task_id: str, state: TaskState = TaskState.SUCCEEDED, error: Optional[str] = None,
                entity_ids=(), entity_kinds=None) -> TaskEntity:
        return TaskEntity(
            kind=EntityKind.TASK, id=task_id, name="task", generation=ApiGeneration.V4,
            state=state, error_detail=error, entity_ids=list(entity_ids),
            entity_kinds=dict(entity_kinds or {}),
        )

    return factory


@pytest.fixture
def response_factory():
    return make_response
