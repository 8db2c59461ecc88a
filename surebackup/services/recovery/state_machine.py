"""
Recovery session state machine.

    Pending -> Restoring -> PoweredOn -> Testing -> {Passed | Failed} -> CleanedUp

Failed is reachable from every non-terminal state. CleanedUp is terminal and
cleaning up a session that is already CleanedUp is a no-op. Every transition
appends to the session history and is mirrored into the journal.
"""
import logging
from typing import Dict, FrozenSet, Optional

from surebackup.models.restore import RestoreTarget
from surebackup.models.session import RecoverySession, SessionStatus, utcnow
from surebackup.services.recovery.context import OrchestrationContext
from surebackup.services.recovery.errors import InvalidTransitionError, RecoveryError

logger = logging.getLogger(__name__)

S = SessionStatus

TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    S.PENDING: frozenset({S.RESTORING, S.FAILED}),
    S.RESTORING: frozenset({S.POWERED_ON, S.FAILED, S.CLEANED_UP}),
    S.POWERED_ON: frozenset({S.TESTING, S.FAILED, S.CLEANED_UP}),
    S.TESTING: frozenset({S.PASSED, S.FAILED, S.CLEANED_UP}),
    # Passed -> Failed covers a cleanup that could not remove the VM
    S.PASSED: frozenset({S.FAILED, S.CLEANED_UP}),
    S.FAILED: frozenset({S.CLEANED_UP}),
    S.CLEANED_UP: frozenset(),
}


def recovery_name_for(vm_name: str, suffix: str, run_id: str) -> str:
    """Synthetic name of the recovered VM: ``<vm>_<suffix>_<run timestamp>``."""
    return f"{vm_name}_{suffix}_{run_id}"


class SessionStateMachine:
    """The only code that changes a RecoverySession."""

    def __init__(self, context: OrchestrationContext):
        self.context = context

    def _transition(
        self,
        session: RecoverySession,
        status: SessionStatus,
        error: Optional[str] = None
    ) -> None:
        with self.context.lock:
            if status not in TRANSITIONS[session.status]:
                raise InvalidTransitionError(
                    session.recovery_name, session.status.value, status.value
                )
            previous = session.status
            session.status = status
            session.history.append((status, utcnow()))
            if error:
                session.last_error = error
            self.context.persist(session)

        logger.info(f"Session {session.recovery_name}: {previous.value} -> {status.value}")

    def begin_restore(
        self,
        target: RestoreTarget,
        recovery_name: str,
        restore_method: str,
        tier: Optional[int] = None
    ) -> RecoverySession:
        """
        Create, register and move a session to Restoring.

        Runs before any restore request is sent, so a crash afterwards still
        leaves a record the cleanup coordinator can find.

        Raises:
            SessionCollisionError: The recovery name is already taken in this run
        """
        session = RecoverySession(
            original_name=target.name,
            recovery_name=recovery_name,
            restore_method=restore_method,
            restore_point_id=target.restore_point_id,
            tier=tier,
        )
        self.context.register_session(session)
        self._transition(session, S.RESTORING)
        return session

    def record_resource(self, session: RecoverySession, resource_id: str) -> None:
        """
        Attach the recovered VM id. It is set once and never changes.

        Raises:
            RecoveryError: A different id was already recorded
        """
        with self.context.lock:
            if session.resource_id == resource_id:
                return
            if session.resource_id is not None:
                raise RecoveryError(
                    f"Session {session.recovery_name} already owns VM {session.resource_id}, "
                    f"refusing to rebind it to {resource_id}"
                )
            session.resource_id = resource_id
            self.context.persist(session)

    def record_address(self, session: RecoverySession, address: str) -> None:
        with self.context.lock:
            session.ip_address = address
            self.context.persist(session)

    def mark_powered_on(self, session: RecoverySession) -> None:
        self._transition(session, S.POWERED_ON)

    def begin_testing(self, session: RecoverySession) -> None:
        self._transition(session, S.TESTING)

    def complete_testing(self, session: RecoverySession, passed: bool, detail: Optional[str] = None) -> None:
        """Apply the runner's aggregate verdict."""
        if passed:
            self._transition(session, S.PASSED)
        else:
            self._transition(session, S.FAILED, detail or "Verification failed")

    def mark_failed(self, session: RecoverySession, error: str) -> None:
        """Move a session to Failed. A session already Failed only gets its error updated."""
        with self.context.lock:
            if session.status == S.FAILED:
                session.last_error = error
                self.context.persist(session)
                return
            self._transition(session, S.FAILED, error)

    def mark_cleaned_up(self, session: RecoverySession) -> bool:
        """
        Move a session to CleanedUp.

        Returns:
            False if the session was already CleanedUp
        """
        with self.context.lock:
            if session.status == S.CLEANED_UP:
                return False
            self._transition(session, S.CLEANED_UP)
            return True
