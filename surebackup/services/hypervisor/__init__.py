"""
Entity resolvers built on the protocol adapter.
"""
from surebackup.services.hypervisor.errors import (
    AddressTimeoutError,
    AmbiguousEntityError,
    EntityNotFoundError,
    NetworkResolutionError,
    PowerStateTimeoutError,
    ResolverError,
    TaskFailedError,
    TaskTimeoutError,
)
from surebackup.services.hypervisor.networks import NetworkResolver, rank_isolated_networks
from surebackup.services.hypervisor.polling import Poller, PollTimeout
from surebackup.services.hypervisor.tasks import TaskWaiter
from surebackup.services.hypervisor.vms import VmResolver

__all__ = [
    "AddressTimeoutError",
    "AmbiguousEntityError",
    "EntityNotFoundError",
    "NetworkResolutionError",
    "NetworkResolver",
    "Poller",
    "PollTimeout",
    "PowerStateTimeoutError",
    "ResolverError",
    "TaskFailedError",
    "TaskTimeoutError",
    "TaskWaiter",
    "VmResolver",
    "rank_isolated_networks",
]
