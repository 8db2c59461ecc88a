"""
Canonical entity shapes and per-generation normalization.

Both API generations describe the same VMs, subnets, clusters and tasks with
different field names and nesting. Everything above the protocol adapter works
on the dataclasses below; the raw payload is kept only so the adapter can
build update bodies.
"""
import copy
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from surebackup.services.api.errors import ApiResponseError
from surebackup.services.api.transport import ApiGeneration


class EntityKind(str, enum.Enum):
    """Entity kinds the adapter knows how to address."""
    VM = "vm"
    SUBNET = "subnet"
    CLUSTER = "cluster"
    TASK = "task"


class PowerState(str, enum.Enum):
    ON = "ON"
    OFF = "OFF"
    UNKNOWN = "UNKNOWN"


class TaskState(str, enum.Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED, TaskState.CANCELED)


@dataclass
class Entity:
    """Canonical entity. ``version`` is the ETag (v4) or spec_version (v3)."""
    kind: EntityKind
    id: str
    name: Optional[str]
    generation: ApiGeneration
    version: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class VmEntity(Entity):
    power_state: PowerState = PowerState.UNKNOWN
    nic_network_ids: List[str] = field(default_factory=list)
    ip_addresses: List[str] = field(default_factory=list)
    guest_tools_enabled: bool = False
    cluster_id: Optional[str] = None


@dataclass
class SubnetEntity(Entity):
    vlan_id: Optional[int] = None
    cluster_id: Optional[str] = None
    subnet_type: Optional[str] = None


@dataclass
class ClusterEntity(Entity):
    pass


@dataclass
class TaskEntity(Entity):
    state: TaskState = TaskState.QUEUED
    error_detail: Optional[str] = None
    percent_complete: int = 0
    entity_ids: List[str] = field(default_factory=list)
    # Affected entity id -> kind tag ("vm", "cluster", ...); empty tag when the server sent none
    entity_kinds: Dict[str, str] = field(default_factory=dict)

    def entities_of_kind(self, kind: EntityKind) -> List[str]:
        """Affected entity ids whose kind tag names ``kind``."""
        return [i for i in self.entity_ids if self.entity_kinds.get(i) == kind.value]


@dataclass(frozen=True)
class TaskHandle:
    """Reference to an asynchronous server-side operation."""
    task_id: str
    description: str = ""

    def __str__(self) -> str:
        return f"{self.task_id} ({self.description})" if self.description else self.task_id


@dataclass(frozen=True)
class EntityFilter:
    """Generation-neutral list filter."""
    name: Optional[str] = None
    cluster_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.name is None and self.cluster_id is None


_V4_TASK_STATES = {
    "QUEUED": TaskState.QUEUED,
    "RUNNING": TaskState.RUNNING,
    "CANCELING": TaskState.RUNNING,
    "SUSPENDED": TaskState.RUNNING,
    "SUCCEEDED": TaskState.SUCCEEDED,
    "FAILED": TaskState.FAILED,
    "CANCELED": TaskState.CANCELED,
}

_V3_TASK_STATES = {
    "QUEUED": TaskState.QUEUED,
    "RUNNING": TaskState.RUNNING,
    "SUCCEEDED": TaskState.SUCCEEDED,
    "FAILED": TaskState.FAILED,
    "ABORTED": TaskState.CANCELED,
}


def _power_state(value: Optional[str]) -> PowerState:
    try:
        return PowerState((value or "").upper())
    except ValueError:
        return PowerState.UNKNOWN


def _dedupe(values: List[str]) -> List[str]:
    return list(dict.fromkeys(v for v in values if v))


def _kind_tag(value: Optional[str]) -> str:
    """Last segment of a kind reference: "vmm:ahv:config:vm" and "vm" both give "vm"."""
    return (value or "").rsplit(":", 1)[-1].strip().lower()


def _affected(refs: List[Dict[str, Any]], id_key: str, kind_key: str) -> Dict[str, str]:
    return {ref[id_key]: _kind_tag(ref.get(kind_key)) for ref in refs if ref.get(id_key)}


class V4Normalizer:
    """Payload shapes of the v4 (generation A) API."""

    generation = ApiGeneration.V4

    def normalize(self, kind: EntityKind, payload: Dict[str, Any], etag: Optional[str] = None) -> Entity:
        entity_id = payload.get("extId")
        if not entity_id:
            raise ApiResponseError(f"v4 {kind.value} payload has no extId: {str(payload)[:200]}")

        base = dict(
            kind=kind,
            id=entity_id,
            name=payload.get("name"),
            generation=self.generation,
            version=etag,
            raw=payload,
        )

        if kind == EntityKind.VM:
            nic_networks = []
            ips = []
            for nic in payload.get("nics") or []:
                info = nic.get("networkInfo") or {}
                subnet = (info.get("subnet") or {}).get("extId")
                if subnet:
                    nic_networks.append(subnet)
                ipv4_info = info.get("ipv4Info") or {}
                for learned in ipv4_info.get("learnedIpAddresses") or []:
                    ips.append(learned.get("value"))
                configured = ((info.get("ipv4Config") or {}).get("ipAddress") or {}).get("value")
                if configured:
                    ips.append(configured)
            return VmEntity(
                **base,
                power_state=_power_state(payload.get("powerState")),
                nic_network_ids=_dedupe(nic_networks),
                ip_addresses=_dedupe(ips),
                guest_tools_enabled=bool((payload.get("guestTools") or {}).get("isEnabled")),
                cluster_id=(payload.get("cluster") or {}).get("extId"),
            )

        if kind == EntityKind.SUBNET:
            return SubnetEntity(
                **base,
                vlan_id=payload.get("networkId"),
                cluster_id=payload.get("clusterReference"),
                subnet_type=payload.get("subnetType"),
            )

        if kind == EntityKind.TASK:
            errors = payload.get("errorMessages") or []
            return TaskEntity(
                **base,
                state=_V4_TASK_STATES.get((payload.get("status") or "").upper(), TaskState.RUNNING),
                error_detail="; ".join(str(e.get("message", e)) for e in errors) or None,
                percent_complete=int(payload.get("progressPercentage") or 0),
                entity_ids=_dedupe([e.get("extId") for e in payload.get("entitiesAffected") or []]),
                entity_kinds=_affected(payload.get("entitiesAffected") or [], "extId", "rel"),
            )

        return ClusterEntity(**base)

    def apply_changes(self, kind: EntityKind, raw: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
        body = copy.deepcopy(raw)
        for key, value in changes.items():
            if key == "power_state":
                body["powerState"] = PowerState(value).value
            elif key == "name":
                body["name"] = value
            else:
                body[key] = value
        return body

    def task_handle(self, body: Dict[str, Any], description: str) -> Optional[TaskHandle]:
        task_id = (body.get("data") or {}).get("extId")
        return TaskHandle(task_id=task_id, description=description) if task_id else None


class V3Normalizer:
    """Payload shapes of the v3 (generation B) API."""

    generation = ApiGeneration.V3

    def normalize(self, kind: EntityKind, payload: Dict[str, Any], etag: Optional[str] = None) -> Entity:
        if kind == EntityKind.TASK:
            task_id = payload.get("uuid")
            if not task_id:
                raise ApiResponseError(f"v3 task payload has no uuid: {str(payload)[:200]}")
            return TaskEntity(
                kind=kind,
                id=task_id,
                name=payload.get("operation_type"),
                generation=self.generation,
                raw=payload,
                state=_V3_TASK_STATES.get((payload.get("status") or "").upper(), TaskState.RUNNING),
                error_detail=payload.get("error_detail") or None,
                percent_complete=int(payload.get("percentage_complete") or 0),
                entity_ids=_dedupe([ref.get("uuid") for ref in payload.get("entity_reference_list") or []]),
                entity_kinds=_affected(payload.get("entity_reference_list") or [], "uuid", "kind"),
            )

        metadata = payload.get("metadata") or {}
        spec = payload.get("spec") or {}
        status = payload.get("status") or {}
        entity_id = metadata.get("uuid")
        if not entity_id:
            raise ApiResponseError(f"v3 {kind.value} payload has no metadata.uuid: {str(payload)[:200]}")

        spec_version = metadata.get("spec_version")
        base = dict(
            kind=kind,
            id=entity_id,
            name=spec.get("name") or status.get("name"),
            generation=self.generation,
            version=str(spec_version) if spec_version is not None else None,
            raw=payload,
        )

        if kind == EntityKind.VM:
            resources = status.get("resources") or spec.get("resources") or {}
            nic_networks = []
            ips = []
            for nic in resources.get("nic_list") or []:
                subnet = (nic.get("subnet_reference") or {}).get("uuid")
                if subnet:
                    nic_networks.append(subnet)
                for endpoint in nic.get("ip_endpoint_list") or []:
                    ips.append(endpoint.get("ip"))
            ngt = ((resources.get("guest_tools") or {}).get("nutanix_guest_tools") or {})
            cluster_ref = status.get("cluster_reference") or spec.get("cluster_reference") or {}
            return VmEntity(
                **base,
                power_state=_power_state(resources.get("power_state")),
                nic_network_ids=_dedupe(nic_networks),
                ip_addresses=_dedupe(ips),
                guest_tools_enabled=(ngt.get("state") or "").upper() == "ENABLED",
                cluster_id=cluster_ref.get("uuid"),
            )

        if kind == EntityKind.SUBNET:
            resources = spec.get("resources") or status.get("resources") or {}
            cluster_ref = spec.get("cluster_reference") or status.get("cluster_reference") or {}
            return SubnetEntity(
                **base,
                vlan_id=resources.get("vlan_id"),
                cluster_id=cluster_ref.get("uuid"),
                subnet_type=resources.get("subnet_type"),
            )

        return ClusterEntity(**base)

    def apply_changes(self, kind: EntityKind, raw: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
        # PUT takes metadata (carrying spec_version) and spec, never status
        body = {
            "metadata": copy.deepcopy(raw.get("metadata") or {}),
            "spec": copy.deepcopy(raw.get("spec") or {}),
        }
        resources = body["spec"].setdefault("resources", {})
        for key, value in changes.items():
            if key == "power_state":
                resources["power_state"] = PowerState(value).value
            elif key == "name":
                body["spec"]["name"] = value
            else:
                resources[key] = value
        return body

    def task_handle(self, body: Dict[str, Any], description: str) -> Optional[TaskHandle]:
        task_id = ((body.get("status") or {}).get("execution_context") or {}).get("task_uuid")
        return TaskHandle(task_id=task_id, description=description) if task_id else None
