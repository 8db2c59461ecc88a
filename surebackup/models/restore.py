"""
Restore target and isolated network models.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple
import enum


class ConsistencyType(str, enum.Enum):
    """Consistency of a restore point."""
    APPLICATION = "application"
    CRASH = "crash"


@dataclass(frozen=True)
class RestoreTarget:
    """A protected workload and the restore point to recover it from."""
    name: str
    backup_id: str
    restore_point_id: str
    created_at: datetime
    consistency: ConsistencyType = ConsistencyType.CRASH

    @property
    def is_application_consistent(self) -> bool:
        return self.consistency == ConsistencyType.APPLICATION


@dataclass(frozen=True)
class RestorePointMetadata:
    """What the backup catalog knows about the workload at backup time."""
    restore_point_id: str
    nic_network_ids: Tuple[str, ...] = field(default_factory=tuple)
    cluster_id: Optional[str] = None


@dataclass(frozen=True)
class IsolatedNetwork:
    """Network segment with no route to production, resolved once per run."""
    id: str
    name: str
    vlan_id: Optional[int] = None
    cluster_id: Optional[str] = None
    subnet_type: Optional[str] = None

    def __str__(self) -> str:
        vlan = f", VLAN {self.vlan_id}" if self.vlan_id is not None else ""
        return f"{self.name} ({self.id}{vlan})"
