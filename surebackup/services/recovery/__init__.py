"""
Recovery orchestration: sessions, workers, boot-order scheduling and cleanup.
"""
from surebackup.services.recovery.catalog import BackupCatalog, RestoreHandle
from surebackup.services.recovery.cleanup import CleanupCoordinator
from surebackup.services.recovery.context import OrchestrationContext, new_run_id
from surebackup.services.recovery.errors import (
    CatalogError,
    ConfigurationError,
    InvalidTransitionError,
    RecoveryError,
    SessionCollisionError,
)
from surebackup.services.recovery.journal import SessionJournal
from surebackup.services.recovery.scheduler import BootOrderScheduler, chunk, plan_tiers
from surebackup.services.recovery.state_machine import SessionStateMachine, recovery_name_for
from surebackup.services.recovery.worker import DryRunWorker, RecoveryWorker

__all__ = [
    "BackupCatalog",
    "BootOrderScheduler",
    "CatalogError",
    "CleanupCoordinator",
    "ConfigurationError",
    "DryRunWorker",
    "InvalidTransitionError",
    "OrchestrationContext",
    "RecoveryError",
    "RecoveryWorker",
    "RestoreHandle",
    "SessionCollisionError",
    "SessionJournal",
    "SessionStateMachine",
    "chunk",
    "new_run_id",
    "plan_tiers",
    "recovery_name_for",
]
