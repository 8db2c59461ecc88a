"""
VM lookups and lifecycle operations on top of the protocol adapter.
"""
import logging
from typing import List, Optional

from surebackup.services.api.adapter import ProtocolAdapter
from surebackup.services.api.entities import EntityFilter, EntityKind, PowerState, TaskHandle, VmEntity
from surebackup.services.api.errors import ApiClientError
from surebackup.services.hypervisor.errors import (
    AddressTimeoutError,
    AmbiguousEntityError,
    EntityNotFoundError,
    PowerStateTimeoutError,
)
from surebackup.services.hypervisor.polling import Poller, PollTimeout
from surebackup.services.hypervisor.tasks import TaskWaiter

logger = logging.getLogger(__name__)


def _is_usable_address(address: str) -> bool:
    return bool(address) and not address.startswith("169.254.") and address not in ("0.0.0.0", "127.0.0.1")


class VmResolver:
    """Typed VM operations used by the recovery workers and the cleanup coordinator."""

    def __init__(self, adapter: ProtocolAdapter, task_waiter: TaskWaiter, poller: Optional[Poller] = None):
        """
        Initialize the resolver.

        Args:
            adapter: Protocol adapter for the active API generation
            task_waiter: Waits on tasks started by power/delete operations
            poller: Poll loop for power-state and address waits
        """
        self.adapter = adapter
        self.task_waiter = task_waiter
        self.poller = poller or task_waiter.poller

    def find_vms_by_name(self, name: str) -> List[VmEntity]:
        """All VMs whose name equals ``name`` exactly (server filters may be fuzzy)."""
        candidates = self.adapter.list(EntityKind.VM, EntityFilter(name=name))
        return [vm for vm in candidates if vm.name == name]

    def find_vm_by_name(self, name: str) -> VmEntity:
        """
        Find exactly one VM by name.

        Raises:
            EntityNotFoundError: No VM has this name
            AmbiguousEntityError: Several VMs share this name
        """
        matches = self.find_vms_by_name(name)
        if not matches:
            raise EntityNotFoundError(f"No VM named '{name}' was found")
        if len(matches) > 1:
            raise AmbiguousEntityError(
                f"{len(matches)} VMs are named '{name}'",
                candidates=[vm.id for vm in matches],
            )
        return matches[0]

    def get_vm(self, vm_id: str) -> VmEntity:
        """
        Fetch a VM by id. ``version`` holds its current concurrency token.

        Raises:
            EntityNotFoundError: The VM does not exist
        """
        try:
            vm = self.adapter.get(EntityKind.VM, vm_id)
        except ApiClientError as e:
            if e.status_code == 404:
                raise EntityNotFoundError(f"VM {vm_id} does not exist") from e
            raise
        return vm

    def set_power_state(
        self,
        vm_id: str,
        state: PowerState,
        wait: bool = True,
        timeout: Optional[float] = None
    ) -> Optional[TaskHandle]:
        """
        Request a power state change.

        Args:
            vm_id: VM to change
            state: Target power state
            wait: Block until the server task finishes
            timeout: Seconds to wait for that task; the waiter default when None

        Returns:
            The task handle started by the server, if any
        """
        logger.info(f"Setting power state of VM {vm_id} to {state.value}")
        current = self.get_vm(vm_id)
        if current.power_state == state:
            logger.info(f"VM {vm_id} is already {state.value}")
            return None

        handle = self.adapter.mutate(
            EntityKind.VM, {"power_state": state.value}, entity_id=vm_id, current=current
        )
        if handle and wait:
            self.task_waiter.wait(handle, timeout=timeout)
        return handle

    def wait_for_power_state(self, vm_id: str, state: PowerState, timeout: float) -> VmEntity:
        """
        Block until a VM reports the given power state.

        Raises:
            PowerStateTimeoutError: Deadline passed first
        """
        last: dict = {}

        def check() -> Optional[VmEntity]:
            vm = self.get_vm(vm_id)
            last["state"] = vm.power_state.value
            return vm if vm.power_state == state else None

        try:
            return self.poller.until(check, timeout)
        except PollTimeout:
            raise PowerStateTimeoutError(vm_id, state.value, timeout, last.get("state"))

    def wait_for_ip_address(self, vm_id: str, timeout: float) -> str:
        """
        Block until the VM reports a usable IPv4 address (link-local ignored).

        Raises:
            AddressTimeoutError: Deadline passed first
        """
        def check() -> Optional[str]:
            vm = self.get_vm(vm_id)
            for address in vm.ip_addresses:
                if _is_usable_address(address):
                    return address
            return None

        try:
            address = self.poller.until(check, timeout)
        except PollTimeout:
            raise AddressTimeoutError(vm_id, timeout)
        logger.info(f"VM {vm_id} reported address {address}")
        return address

    def delete_vm(self, vm_id: str, wait: bool = True) -> bool:
        """
        Delete a VM. A VM that is already gone counts as deleted.

        Returns:
            True if a delete was issued, False if the VM no longer existed
        """
        try:
            handle = self.adapter.delete(EntityKind.VM, vm_id)
        except ApiClientError as e:
            if e.status_code == 404:
                logger.info(f"VM {vm_id} is already gone")
                return False
            raise

        if handle and wait:
            self.task_waiter.wait(handle)
        logger.info(f"Deleted VM {vm_id}")
        return True
