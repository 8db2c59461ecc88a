"""
Backup catalog interface.

The backup product that owns restore points is an external collaborator. The
orchestrator only needs to enumerate restore targets, read restore point
metadata and start a restore onto the isolated network.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from surebackup.models.restore import IsolatedNetwork, RestorePointMetadata, RestoreTarget
from surebackup.services.api.entities import TaskHandle


@dataclass(frozen=True)
class RestoreHandle:
    """
    What the backup product reports after starting a restore.

    At least one of the fields is usually set. With neither, the recovered VM
    is located on the hypervisor by its recovery name.
    """
    resource_id: Optional[str] = None
    task: Optional[TaskHandle] = None


class BackupCatalog(ABC):
    """Abstract base class for backup catalog integrations."""

    @abstractmethod
    def list_restore_targets(self) -> List[RestoreTarget]:
        """
        List the restore targets to verify in this run.

        Returns:
            Latest restore point per protected workload
        """
        pass

    @abstractmethod
    def get_restore_point_metadata(self, restore_point_id: str) -> RestorePointMetadata:
        """
        Describe a restore point.

        Args:
            restore_point_id: Restore point identifier

        Returns:
            NIC networks and storage placement recorded at backup time
        """
        pass

    @abstractmethod
    def start_restore(
        self,
        target: RestoreTarget,
        network: IsolatedNetwork,
        recovery_name: str
    ) -> RestoreHandle:
        """
        Restore a restore point as a new VM attached only to the isolated network.

        Args:
            target: Restore target to recover
            network: Isolated network every NIC of the new VM must use
            recovery_name: Unique name for the recovered VM

        Returns:
            Handle identifying the new VM and/or the task creating it

        Raises:
            CatalogError: The restore could not be started
        """
        pass
