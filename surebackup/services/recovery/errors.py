"""
Exceptions raised by the recovery orchestration engine.
"""


class RecoveryError(Exception):
    """Base exception for recovery orchestration."""
    pass


class InvalidTransitionError(RecoveryError):
    """A session was asked to move to a state it cannot reach from its current one."""

    def __init__(self, recovery_name: str, current: str, requested: str):
        super().__init__(
            f"Session {recovery_name} cannot move from {current} to {requested}"
        )
        self.recovery_name = recovery_name
        self.current = current
        self.requested = requested


class SessionCollisionError(RecoveryError):
    """Two sessions in one run were given the same recovery name."""
    pass


class CatalogError(RecoveryError):
    """The backup catalog could not list, describe or restore a restore point."""
    pass


class ConfigurationError(RecoveryError):
    """Run configuration is invalid or incomplete."""
    pass
