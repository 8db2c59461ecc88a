"""
Domain and database models package.
"""
from surebackup.models.base import Base, create_journal_engine, create_session_factory
from surebackup.models.journal import SessionRecord
from surebackup.models.plan import RecoveryPlan, TargetOptions, VerificationOptions
from surebackup.models.restore import (
    ConsistencyType,
    IsolatedNetwork,
    RestorePointMetadata,
    RestoreTarget,
)
from surebackup.models.session import (
    CLEANABLE_STATUSES,
    RecoverySession,
    RunResult,
    SessionStatus,
    TestResult,
)

__all__ = [
    # Base
    "Base",
    "create_journal_engine",
    "create_session_factory",
    # Journal
    "SessionRecord",
    # Plan
    "RecoveryPlan",
    "TargetOptions",
    "VerificationOptions",
    # Restore
    "ConsistencyType",
    "IsolatedNetwork",
    "RestorePointMetadata",
    "RestoreTarget",
    # Sessions
    "CLEANABLE_STATUSES",
    "RecoverySession",
    "RunResult",
    "SessionStatus",
    "TestResult",
]
