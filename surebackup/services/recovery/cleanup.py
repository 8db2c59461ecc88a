"""
Cleanup coordinator.

Removes recovered VMs once a batch is done, after a fatal error, and for
sessions a previous run left open in the journal.
"""
import logging
from typing import Dict, Iterable, List

from surebackup.core.logging_handler import LoggingContext
from surebackup.models.session import RecoverySession, SessionStatus
from surebackup.services.api.entities import PowerState
from surebackup.services.hypervisor.errors import EntityNotFoundError
from surebackup.services.hypervisor.vms import VmResolver
from surebackup.services.recovery.context import OrchestrationContext
from surebackup.services.recovery.state_machine import SessionStateMachine

logger = logging.getLogger(__name__)


class CleanupCoordinator:
    """Tears down recovered VMs, one failure boundary per session."""

    def __init__(
        self,
        context: OrchestrationContext,
        machine: SessionStateMachine,
        vm_resolver: VmResolver,
        power_off_first: bool = True
    ):
        self.context = context
        self.machine = machine
        self.vm_resolver = vm_resolver
        self.power_off_first = power_off_first

    def cleanup_session(self, session: RecoverySession) -> bool:
        """
        Delete the VM owned by a session and mark it CleanedUp.

        A session that is already CleanedUp is left alone and no API call is
        made. A session without a recorded VM id is looked up by its recovery
        name first, since the restore may have created the VM before the id
        was reported back.

        Returns:
            True if the session was cleaned up by this call
        """
        if session.status == SessionStatus.CLEANED_UP:
            return False
        if not session.is_cleanable:
            logger.debug(f"Session {session.recovery_name} is {session.status.value}, nothing to clean up")
            return False

        with LoggingContext(vm_name=session.original_name):
            logger.info(f"Cleaning up {session.recovery_name}")

            vm_ids = self._owned_vm_ids(session)
            for vm_id in vm_ids:
                if self.power_off_first:
                    self._power_off(vm_id)
                self.vm_resolver.delete_vm(vm_id)

            if not vm_ids:
                logger.info(f"No VM named {session.recovery_name} exists")

            return self.machine.mark_cleaned_up(session)

    def _owned_vm_ids(self, session: RecoverySession) -> List[str]:
        if session.resource_id:
            return [session.resource_id]

        matches = self.vm_resolver.find_vms_by_name(session.recovery_name)
        if matches:
            self.machine.record_resource(session, matches[0].id)
        return [vm.id for vm in matches]

    def _power_off(self, vm_id: str) -> None:
        """Best-effort power off; deletion is attempted either way."""
        try:
            self.vm_resolver.set_power_state(vm_id, PowerState.OFF)
        except EntityNotFoundError:
            pass
        except Exception as e:
            logger.warning(f"Could not power off VM {vm_id} before deleting it: {e}")

    def cleanup_sessions(self, sessions: Iterable[RecoverySession]) -> List[str]:
        """
        Clean up every session, continuing past individual failures.

        Returns:
            Error messages for sessions that could not be cleaned up
        """
        errors = []
        for session in sessions:
            try:
                self.cleanup_session(session)
            except Exception as e:
                message = f"Cleanup of {session.recovery_name} failed: {e}"
                logger.error(message, exc_info=True)
                errors.append(message)
                self.machine.mark_failed(session, message)
                self.context.add_warning(message)
        return errors

    def cleanup_all(self) -> List[str]:
        """Clean up every session known to the run."""
        sessions = self.context.sessions()
        pending = [s for s in sessions if s.status != SessionStatus.CLEANED_UP]
        if pending:
            logger.info(f"Cleaning up {len(pending)} remaining session(s)")
        return self.cleanup_sessions(pending)

    def sweep_journal(self, journal=None) -> int:
        """
        Clean up sessions a previous run left open in the journal.

        Each leftover is cleaned in a context of its own run, so its transitions
        update the original journal row and it stays out of this run's result.

        Args:
            journal: SessionJournal to read; defaults to the context's journal

        Returns:
            Number of sessions cleaned up
        """
        journal = journal or self.context.journal
        if journal is None:
            return 0

        records = journal.open_sessions(exclude_run_id=self.context.run_id)
        if not records:
            return 0

        logger.warning(f"Found {len(records)} session(s) left open by earlier runs")
        cleaned = 0
        sweepers: Dict[str, CleanupCoordinator] = {}
        for record in records:
            sweeper = sweepers.get(record.run_id)
            if sweeper is None:
                previous = OrchestrationContext(run_id=record.run_id, journal=journal)
                sweeper = CleanupCoordinator(
                    previous, SessionStateMachine(previous), self.vm_resolver, self.power_off_first
                )
                sweepers[record.run_id] = sweeper

            session = journal.to_session(record)
            try:
                sweeper.context.register_session(session)
                if sweeper.cleanup_session(session):
                    cleaned += 1
            except Exception as e:
                message = f"Cleanup of leftover session {session.recovery_name} from run {record.run_id} failed: {e}"
                logger.error(message, exc_info=True)
                self.context.add_warning(message)
        for sweeper in sweepers.values():
            self.context.add_warnings(sweeper.context.warnings())
        return cleaned
