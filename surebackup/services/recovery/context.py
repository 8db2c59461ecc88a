"""
Per-run orchestration context.

The context is created once per run and passed explicitly to every worker,
the scheduler and the cleanup coordinator. It owns the session registry, the
accumulated test results and warnings, and serializes access to them.
"""
import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from surebackup.models.session import RecoverySession, RunResult, TestResult
from surebackup.services.recovery.errors import SessionCollisionError

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    """Run timestamp used in recovery names and journal rows."""
    return datetime.now().strftime("%Y%m%d_%H%M%S")


class OrchestrationContext:
    """Shared mutable state of one recovery run."""

    def __init__(self, run_id: Optional[str] = None, journal=None, dry_run: bool = False):
        """
        Initialize the context.

        Args:
            run_id: Run identifier; defaults to the current local timestamp
            journal: Optional SessionJournal mirroring every session change
            dry_run: Whether the run only plans and never provisions
        """
        self.run_id = run_id or new_run_id()
        self.journal = journal
        self.dry_run = dry_run
        self.lock = threading.RLock()
        self._sessions: Dict[str, RecoverySession] = {}
        self._results: List[TestResult] = []
        self._warnings: List[str] = []
        self.skipped_targets: List[str] = []
        self.failed_tiers: List[Optional[int]] = []

    def register_session(self, session: RecoverySession) -> None:
        """
        Add a session to the registry and journal it.

        Raises:
            SessionCollisionError: Another session already uses the recovery name
        """
        with self.lock:
            if session.recovery_name in self._sessions:
                raise SessionCollisionError(
                    f"Recovery name {session.recovery_name} is already used in run {self.run_id}"
                )
            self._sessions[session.recovery_name] = session
            self.persist(session)

    def persist(self, session: RecoverySession) -> None:
        """Mirror a session into the journal. Journal failures never stop a run."""
        if self.journal is None:
            return
        try:
            self.journal.record(self.run_id, session)
        except Exception as e:
            logger.warning(f"Failed to journal session {session.recovery_name}: {e}")

    def sessions(self) -> List[RecoverySession]:
        with self.lock:
            return list(self._sessions.values())

    def get_session(self, recovery_name: str) -> Optional[RecoverySession]:
        with self.lock:
            return self._sessions.get(recovery_name)

    def add_results(self, results: Iterable[TestResult]) -> None:
        with self.lock:
            self._results.extend(results)

    def results(self) -> List[TestResult]:
        with self.lock:
            return list(self._results)

    def has_failures(self, vm_names: Iterable[str]) -> bool:
        """Whether any recorded result for these workloads failed."""
        names = set(vm_names)
        with self.lock:
            return any(not r.passed and r.vm_name in names for r in self._results)

    def add_warning(self, message: str) -> None:
        with self.lock:
            if message not in self._warnings:
                self._warnings.append(message)

    def add_warnings(self, messages: Iterable[str]) -> None:
        for message in messages:
            self.add_warning(message)

    def warnings(self) -> List[str]:
        with self.lock:
            return list(self._warnings)

    def skip_targets(self, names: Iterable[str]) -> None:
        with self.lock:
            self.skipped_targets.extend(names)

    def build_result(self) -> RunResult:
        """
        Aggregate the run outcome.

        The run succeeds only when at least one test ran, every test passed and
        no target was skipped.
        """
        with self.lock:
            results = list(self._results)
            success = (
                bool(results)
                and all(r.passed for r in results)
                and not self.skipped_targets
            )
            return RunResult(
                success=success,
                sessions=list(self._sessions.values()),
                test_results=results,
                warnings=list(self._warnings),
                skipped_targets=list(self.skipped_targets),
                failed_tiers=list(self.failed_tiers),
                dry_run=self.dry_run,
            )
