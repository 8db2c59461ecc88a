"""
Recovery session, test result and run result models.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, enum.Enum):
    """Lifecycle of one recovered VM."""
    PENDING = "Pending"
    RESTORING = "Restoring"
    POWERED_ON = "PoweredOn"
    TESTING = "Testing"
    PASSED = "Passed"
    FAILED = "Failed"
    CLEANED_UP = "CleanedUp"


# Sessions in these states may still own a provisioned VM
CLEANABLE_STATUSES = frozenset({
    SessionStatus.RESTORING,
    SessionStatus.POWERED_ON,
    SessionStatus.TESTING,
    SessionStatus.PASSED,
    SessionStatus.FAILED,
})


@dataclass
class RecoverySession:
    """
    Mutable orchestration state for one recovered VM.

    Only the transition functions in
    ``surebackup.services.recovery.state_machine`` change these fields.
    """
    original_name: str
    recovery_name: str
    restore_method: str
    restore_point_id: Optional[str] = None
    tier: Optional[int] = None
    resource_id: Optional[str] = None
    status: SessionStatus = SessionStatus.PENDING
    started_at: datetime = field(default_factory=utcnow)
    last_error: Optional[str] = None
    ip_address: Optional[str] = None
    history: List[Tuple[SessionStatus, datetime]] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append((self.status, self.started_at))

    @property
    def is_cleanable(self) -> bool:
        return self.status in CLEANABLE_STATUSES

    @property
    def has_failed(self) -> bool:
        if self.status == SessionStatus.FAILED:
            return True
        # A cleaned up session keeps its verdict in the history
        return self.status == SessionStatus.CLEANED_UP and any(
            status == SessionStatus.FAILED for status, _ in self.history
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for reporting."""
        return {
            "original_name": self.original_name,
            "recovery_name": self.recovery_name,
            "restore_method": self.restore_method,
            "restore_point_id": self.restore_point_id,
            "tier": self.tier,
            "resource_id": self.resource_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "last_error": self.last_error,
            "ip_address": self.ip_address,
            "history": [(status.value, at.isoformat()) for status, at in self.history],
        }


@dataclass(frozen=True)
class TestResult:
    """Outcome of one verification test against one VM."""
    __test__ = False  # not a pytest test class

    vm_name: str
    test_name: str
    passed: bool
    detail: str
    duration_seconds: float
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vm_name": self.vm_name,
            "test_name": self.test_name,
            "passed": self.passed,
            "detail": self.detail,
            "duration_seconds": round(self.duration_seconds, 3),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RunResult:
    """Aggregate outcome of one recovery run, consumed read-only by reporting."""
    success: bool
    sessions: List[RecoverySession]
    test_results: List[TestResult]
    warnings: List[str]
    skipped_targets: List[str] = field(default_factory=list)
    failed_tiers: List[Optional[int]] = field(default_factory=list)
    dry_run: bool = False

    @property
    def failed_results(self) -> List[TestResult]:
        return [r for r in self.test_results if not r.passed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "sessions": [s.to_dict() for s in self.sessions],
            "test_results": [r.to_dict() for r in self.test_results],
            "warnings": list(self.warnings),
            "skipped_targets": list(self.skipped_targets),
            "failed_tiers": list(self.failed_tiers),
        }
