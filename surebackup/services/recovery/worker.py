"""
Per-target recovery workers.

A worker drives one restore target through restore, boot and verification.
Every target-level failure is caught here, recorded on the session and as a
failed TestResult, and never propagates to the scheduler.
"""
import logging
import time
from typing import Callable, List, Optional

from surebackup.core.logging_handler import LoggingContext
from surebackup.models.plan import VerificationOptions
from surebackup.models.restore import IsolatedNetwork, RestoreTarget
from surebackup.models.session import RecoverySession, SessionStatus, TestResult
from surebackup.services.api.entities import EntityKind, PowerState
from surebackup.services.hypervisor.errors import AddressTimeoutError
from surebackup.services.hypervisor.networks import NetworkResolver
from surebackup.services.hypervisor.tasks import TaskWaiter
from surebackup.services.hypervisor.vms import VmResolver
from surebackup.services.recovery.catalog import BackupCatalog
from surebackup.services.recovery.context import OrchestrationContext
from surebackup.services.recovery.errors import CatalogError
from surebackup.services.recovery.state_machine import SessionStateMachine, recovery_name_for
from surebackup.services.verification.base import VerificationTarget
from surebackup.services.verification.runner import VerificationRunner

logger = logging.getLogger(__name__)

LogCallback = Callable[[str, str, Optional[dict]], None]


class RecoveryWorker:
    """Restores, boots and verifies targets against the live cluster."""

    def __init__(
        self,
        context: OrchestrationContext,
        machine: SessionStateMachine,
        catalog: BackupCatalog,
        network: IsolatedNetwork,
        network_resolver: NetworkResolver,
        vm_resolver: Optional[VmResolver] = None,
        task_waiter: Optional[TaskWaiter] = None,
        runner: Optional[VerificationRunner] = None,
        options_for: Optional[Callable[[str], VerificationOptions]] = None,
        restore_method: str = "FullRestore",
        name_suffix: str = "SureBackup",
        restore_timeout: float = 1800,
        power_on_timeout: float = 600,
        ip_wait_timeout: float = 300,
        log_callback: Optional[LogCallback] = None
    ):
        """
        Initialize the worker.

        Args:
            context: Run context shared with the scheduler and cleanup
            machine: Session state machine bound to the same context
            catalog: Backup catalog that performs restores
            network: Isolated network every recovered VM is attached to
            network_resolver: Used for the per-target isolation check
            vm_resolver: VM operations; defaults to the network resolver's
            task_waiter: Waits on restore tasks; defaults to the VM resolver's
            runner: Verification runner
            options_for: Verification options for a VM name
            restore_method: Restore method recorded on each session
            name_suffix: Middle part of the synthetic recovery name
            restore_timeout: Seconds to wait for a restore task
            power_on_timeout: Seconds to wait for the powered-on state
            ip_wait_timeout: Seconds to wait for the VM to report an address
            log_callback: Optional callback(level, message, details) for run logs
        """
        self.context = context
        self.machine = machine
        self.catalog = catalog
        self.network = network
        self.network_resolver = network_resolver
        self.vm_resolver = vm_resolver or network_resolver.vm_resolver
        self.task_waiter = task_waiter or self.vm_resolver.task_waiter
        self.runner = runner or VerificationRunner(self.vm_resolver)
        self.options_for = options_for or (lambda name: VerificationOptions())
        self.restore_method = restore_method
        self.name_suffix = name_suffix
        self.restore_timeout = restore_timeout
        self.power_on_timeout = power_on_timeout
        self.ip_wait_timeout = ip_wait_timeout
        self.log_callback = log_callback

    def _log(self, level: str, message: str, details: dict = None):
        """
        Log a message to both the Python logger and the callback (if set).

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            message: Human-readable log message
            details: Optional structured metadata
        """
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(message)

        if self.log_callback:
            try:
                self.log_callback(level, message, details)
            except Exception as e:
                logger.warning(f"Log callback failed: {e}")

    def _fail_step(self, vm_name: str, step: str, detail: str, started: float) -> None:
        self.context.add_results([TestResult(
            vm_name=vm_name,
            test_name=step,
            passed=False,
            detail=detail,
            duration_seconds=time.monotonic() - started,
        )])

    def recovery_name(self, target: RestoreTarget) -> str:
        return recovery_name_for(target.name, self.name_suffix, self.context.run_id)

    def check_isolation(self, target: RestoreTarget) -> List[str]:
        """
        Compare the isolated network with the workload's production networks.

        Overlaps and lookup failures are recorded as run warnings.
        """
        known_ids = ()
        try:
            metadata = self.catalog.get_restore_point_metadata(target.restore_point_id)
            known_ids = metadata.nic_network_ids
            if metadata.cluster_id and self.network.cluster_id and metadata.cluster_id != self.network.cluster_id:
                self.context.add_warning(
                    f"{target.name} was backed up on cluster {metadata.cluster_id} but the isolated "
                    f"network {self.network} belongs to cluster {self.network.cluster_id}"
                )
        except Exception as e:
            self.context.add_warning(
                f"Could not read restore point {target.restore_point_id} of {target.name}: {e}"
            )

        warnings = self.network_resolver.verify_isolation(self.network, target.name, known_ids)
        self.context.add_warnings(warnings)
        return warnings

    def restore(self, target: RestoreTarget, tier: Optional[int] = None) -> Optional[RecoverySession]:
        """
        Register a session and restore the target onto the isolated network.

        Returns:
            The session; it is Restoring with a VM id on success, Failed otherwise.
            None when no session could be registered.
        """
        started = time.monotonic()
        recovery_name = self.recovery_name(target)

        with LoggingContext(vm_name=target.name):
            try:
                session = self.machine.begin_restore(target, recovery_name, self.restore_method, tier)
            except Exception as e:
                self._log("ERROR", f"Could not start recovery of {target.name}: {e}")
                self._fail_step(target.name, "Restore", str(e), started)
                return None

            try:
                self.check_isolation(target)

                self._log("INFO", f"Restoring {target.name} from {target.restore_point_id} as {recovery_name}", {
                    "restore_point_id": target.restore_point_id,
                    "network_id": self.network.id,
                })
                handle = self.catalog.start_restore(target, self.network, recovery_name)

                vm_id = handle.resource_id
                if not vm_id and handle.task:
                    task = self.task_waiter.wait(handle.task, timeout=self.restore_timeout)
                    # Restore tasks also list clusters and disks; only a single VM is trusted
                    vm_ids = task.entities_of_kind(EntityKind.VM)
                    vm_id = vm_ids[0] if len(vm_ids) == 1 else None
                if not vm_id:
                    vm_id = self.vm_resolver.find_vm_by_name(recovery_name).id

                self.machine.record_resource(session, vm_id)
                self._log("INFO", f"Restored {target.name} as VM {vm_id}")

            except Exception as e:
                message = f"Restore failed: {e}"
                if isinstance(e, CatalogError):
                    message = f"Backup catalog refused the restore: {e}"
                self._log("ERROR", f"{target.name}: {message}")
                self.machine.mark_failed(session, message)
                self._fail_step(target.name, "Restore", message, started)

        return session

    def power_on(self, session: RecoverySession) -> bool:
        """
        Power on a restored VM and wait until it reports the powered-on state.

        Returns:
            True if the session reached PoweredOn
        """
        if session.status != SessionStatus.RESTORING or not session.resource_id:
            return False

        started = time.monotonic()
        with LoggingContext(vm_name=session.original_name):
            try:
                self.vm_resolver.set_power_state(
                    session.resource_id, PowerState.ON, timeout=self.power_on_timeout
                )
                self.vm_resolver.wait_for_power_state(
                    session.resource_id, PowerState.ON, self.power_on_timeout
                )
            except Exception as e:
                message = f"Boot failed: {e}"
                self._log("ERROR", f"{session.original_name}: {message}")
                self.machine.mark_failed(session, message)
                self._fail_step(session.original_name, "Boot", message, started)
                return False

            self.machine.mark_powered_on(session)
            self._log("INFO", f"{session.recovery_name} is powered on")

            try:
                address = self.vm_resolver.wait_for_ip_address(session.resource_id, self.ip_wait_timeout)
                self.machine.record_address(session, address)
            except AddressTimeoutError as e:
                # Checks that need an address report the failure themselves
                self._log("WARNING", f"{session.original_name}: {e}")
            except Exception as e:
                self._log("WARNING", f"{session.original_name}: could not read IP address: {e}")

        return True

    def verify(self, session: RecoverySession) -> bool:
        """
        Run the configured checks and apply the verdict to the session.

        Returns:
            True if every check passed
        """
        if session.status != SessionStatus.POWERED_ON:
            return False

        started = time.monotonic()
        with LoggingContext(vm_name=session.original_name):
            try:
                self.machine.begin_testing(session)
                target = VerificationTarget(
                    vm_name=session.original_name,
                    vm_id=session.resource_id,
                    address=session.ip_address,
                )
                results = self.runner.run(target, self.options_for(session.original_name))
                self.context.add_results(results)
                if not results:
                    # A VM nothing was checked on is not verified
                    self._fail_step(session.original_name, "Verification", "No verification checks ran", started)

                passed = VerificationRunner.verdict(results)
                failed = [r.test_name for r in results if not r.passed]
                detail = f"Failed checks: {', '.join(failed)}" if failed else "No verification checks ran"
                self.machine.complete_testing(session, passed, None if passed else detail)
            except Exception as e:
                message = f"Verification failed: {e}"
                self._log("ERROR", f"{session.original_name}: {message}")
                self.machine.mark_failed(session, message)
                self._fail_step(session.original_name, "Verification", message, started)
                return False

        self._log("INFO" if passed else "WARNING",
                  f"{session.original_name}: verification {'passed' if passed else 'failed'}")
        return passed


class DryRunWorker(RecoveryWorker):
    """
    Plans recoveries without provisioning anything.

    Resolution and the isolation check run as in a live run; instead of a
    restore, a passed "would restore" result is recorded per target.
    """

    def restore(self, target: RestoreTarget, tier: Optional[int] = None) -> Optional[RecoverySession]:
        started = time.monotonic()
        recovery_name = self.recovery_name(target)

        with LoggingContext(vm_name=target.name):
            try:
                self.check_isolation(target)
            except Exception as e:
                self._fail_step(target.name, "Dry run", f"Planning failed: {e}", started)
                return None

            tier_label = f"tier {tier}" if tier is not None else "last tier"
            consistency = "application-consistent" if target.is_application_consistent else "crash-consistent"
            detail = (
                f"Would restore {target.restore_point_id} as {recovery_name} "
                f"on {self.network} ({tier_label}, {consistency})"
            )
            self._log("INFO", f"[dry run] {detail}")
            self.context.add_results([TestResult(
                vm_name=target.name,
                test_name="Dry run",
                passed=True,
                detail=detail,
                duration_seconds=time.monotonic() - started,
            )])
        return None

    def power_on(self, session: RecoverySession) -> bool:
        return False

    def verify(self, session: RecoverySession) -> bool:
        return False
