"""
Exceptions raised by the entity resolvers.
"""
from typing import List, Optional

from surebackup.services.api.entities import TaskHandle


class ResolverError(Exception):
    """Base exception for entity lookups and waits."""
    pass


class EntityNotFoundError(ResolverError):
    """No entity matched the lookup."""
    pass


class AmbiguousEntityError(ResolverError):
    """More than one entity matched a lookup that must be unique."""

    def __init__(self, message: str, candidates: Optional[List[str]] = None):
        super().__init__(message)
        self.candidates = candidates or []


class NetworkResolutionError(ResolverError):
    """The isolated network could not be resolved. Configuration error."""
    pass


class TaskFailedError(ResolverError):
    """An asynchronous server task ended in a failure state."""

    def __init__(self, handle: TaskHandle, detail: str):
        super().__init__(f"Task {handle} failed: {detail}")
        self.handle = handle
        self.detail = detail


class TaskTimeoutError(ResolverError):
    """An asynchronous server task did not finish before the deadline."""

    def __init__(self, handle: TaskHandle, timeout: float, last_state: Optional[str] = None):
        state = f" (last state {last_state})" if last_state else ""
        super().__init__(f"Task {handle} did not complete within {timeout:.0f}s{state}")
        self.handle = handle
        self.timeout = timeout
        self.last_state = last_state


class PowerStateTimeoutError(ResolverError):
    """A VM did not reach the requested power state before the deadline."""

    def __init__(self, vm_id: str, state: str, timeout: float, last_state: Optional[str] = None):
        super().__init__(
            f"VM {vm_id} did not reach power state {state} within {timeout:.0f}s "
            f"(last reported: {last_state or 'unknown'})"
        )
        self.vm_id = vm_id
        self.state = state
        self.timeout = timeout
        self.last_state = last_state


class AddressTimeoutError(ResolverError):
    """A VM did not report an IP address before the deadline."""

    def __init__(self, vm_id: str, timeout: float):
        super().__init__(f"VM {vm_id} reported no IP address within {timeout:.0f}s")
        self.vm_id = vm_id
        self.timeout = timeout
