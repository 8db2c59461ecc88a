"""
Isolated network resolution and isolation safety checks.
"""
import logging
import re
from typing import Iterable, List, Optional, Sequence, Tuple

from surebackup.models.restore import IsolatedNetwork
from surebackup.services.api.adapter import ProtocolAdapter
from surebackup.services.api.entities import EntityFilter, EntityKind, SubnetEntity
from surebackup.services.api.errors import ApiClientError, ApiError
from surebackup.services.hypervisor.errors import (
    NetworkResolutionError,
    ResolverError,
)
from surebackup.services.hypervisor.vms import VmResolver

logger = logging.getLogger(__name__)

DEFAULT_NETWORK_PATTERNS = ("isolated", "surebackup", "sandbox", "lab")

RankKey = Tuple[int, int]


def rank_key(name: str, patterns: Sequence[str]) -> Optional[RankKey]:
    """
    Rank one network name against the auto-detect patterns.

    Tie-break order, lowest key wins:
      1. index of the first pattern (in configured order) the name contains
      2. whole-word match (0) before substring match (1), so "lab-net"
         outranks "collaboration"

    Returns:
        Sort key, or None if the name matches no pattern
    """
    lowered = (name or "").lower()
    for index, pattern in enumerate(patterns):
        needle = pattern.lower()
        if needle not in lowered:
            continue
        whole_word = re.search(rf"(^|[^a-z0-9]){re.escape(needle)}([^a-z0-9]|$)", lowered)
        return index, 0 if whole_word else 1
    return None


def rank_isolated_networks(
    networks: Iterable[SubnetEntity],
    patterns: Sequence[str] = DEFAULT_NETWORK_PATTERNS
) -> List[Tuple[RankKey, SubnetEntity]]:
    """Candidates matching any pattern, best first. Equal keys keep server order."""
    ranked = []
    for network in networks:
        key = rank_key(network.name, patterns)
        if key is not None:
            ranked.append((key, network))
    ranked.sort(key=lambda item: item[0])
    return ranked


def _to_isolated(network: SubnetEntity) -> IsolatedNetwork:
    return IsolatedNetwork(
        id=network.id,
        name=network.name or network.id,
        vlan_id=network.vlan_id,
        cluster_id=network.cluster_id,
        subnet_type=network.subnet_type,
    )


class NetworkResolver:
    """Resolves the isolated network a run recovers VMs into."""

    def __init__(
        self,
        adapter: ProtocolAdapter,
        vm_resolver: VmResolver,
        patterns: Sequence[str] = DEFAULT_NETWORK_PATTERNS
    ):
        self.adapter = adapter
        self.vm_resolver = vm_resolver
        self.patterns = tuple(patterns) or DEFAULT_NETWORK_PATTERNS

    def resolve_isolated_network(
        self,
        network_id: Optional[str] = None,
        name: Optional[str] = None,
        cluster_id: Optional[str] = None
    ) -> Tuple[IsolatedNetwork, List[str]]:
        """
        Resolve the isolated network.

        An explicit id takes precedence over a name; with neither, the network
        is auto-detected by name pattern.

        Args:
            network_id: Explicit network identifier
            name: Explicit network name
            cluster_id: Restrict name lookups and auto-detection to this cluster

        Returns:
            Tuple of (network, warnings raised while resolving)

        Raises:
            NetworkResolutionError: Not found, or auto-detection found zero or ambiguous matches
        """
        if network_id:
            return self._by_id(network_id), []
        if name:
            return self._by_name(name, cluster_id), []
        return self._auto_detect(cluster_id)

    def _by_id(self, network_id: str) -> IsolatedNetwork:
        try:
            network = self.adapter.get(EntityKind.SUBNET, network_id)
        except ApiClientError as e:
            if e.status_code == 404:
                raise NetworkResolutionError(
                    f"Isolated network with id '{network_id}' does not exist. "
                    f"Check ISOLATED_NETWORK_ID."
                ) from e
            raise
        logger.info(f"Using isolated network {network.name} ({network.id})")
        return _to_isolated(network)

    def _by_name(self, name: str, cluster_id: Optional[str]) -> IsolatedNetwork:
        matches = [
            n for n in self.adapter.list(EntityKind.SUBNET, EntityFilter(name=name))
            if n.name == name
        ]
        if cluster_id and len(matches) > 1:
            matches = [n for n in matches if n.cluster_id == cluster_id]

        if not matches:
            raise NetworkResolutionError(
                f"No network named '{name}' was found. Create it or check ISOLATED_NETWORK_NAME."
            )
        if len(matches) > 1:
            raise NetworkResolutionError(
                f"{len(matches)} networks are named '{name}' "
                f"({', '.join(n.id for n in matches)}). Set ISOLATED_NETWORK_ID instead."
            )
        logger.info(f"Using isolated network {matches[0].name} ({matches[0].id})")
        return _to_isolated(matches[0])

    def _auto_detect(self, cluster_id: Optional[str]) -> Tuple[IsolatedNetwork, List[str]]:
        networks = self.adapter.list(EntityKind.SUBNET)
        if cluster_id:
            networks = [n for n in networks if n.cluster_id in (None, cluster_id)]

        ranked = rank_isolated_networks(networks, self.patterns)
        if not ranked:
            raise NetworkResolutionError(
                f"No isolated network could be auto-detected: no network name contains any of "
                f"{', '.join(self.patterns)}. Create a network matching one of these patterns, "
                f"or set ISOLATED_NETWORK_ID / ISOLATED_NETWORK_NAME."
            )

        best_key, best = ranked[0]
        tied = [n for key, n in ranked if key == best_key]
        if len(tied) > 1:
            names = ", ".join(f"{n.name} ({n.id})" for n in tied)
            raise NetworkResolutionError(
                f"Isolated network auto-detection is ambiguous between: {names}. "
                f"Set ISOLATED_NETWORK_ID or ISOLATED_NETWORK_NAME."
            )

        warning = (
            f"Isolated network was auto-detected as '{best.name}' ({best.id}) by name pattern; "
            f"set ISOLATED_NETWORK_ID to pin it"
        )
        logger.warning(warning)
        return _to_isolated(best), [warning]

    def verify_isolation(
        self,
        network: IsolatedNetwork,
        source_vm_name: str,
        known_network_ids: Sequence[str] = ()
    ) -> List[str]:
        """
        Check the isolated network is not one the source workload is attached to.

        Live NIC attachments of the source VM are compared first; the network
        ids recorded in the restore point are compared as well. Problems are
        returned as warnings, never raised, so a transient lookup failure does
        not block recovery.

        Args:
            network: Resolved isolated network
            source_vm_name: Name of the production workload
            known_network_ids: NIC networks recorded in the restore point metadata

        Returns:
            Warning messages (empty when isolation was confirmed)
        """
        warnings: List[str] = []
        production_ids = set(known_network_ids)

        try:
            source_vms = self.vm_resolver.find_vms_by_name(source_vm_name)
        except (ApiError, ResolverError) as e:
            warnings.append(
                f"Could not look up source VM '{source_vm_name}' to verify network isolation: {e}"
            )
            source_vms = []

        for vm in source_vms:
            production_ids.update(vm.nic_network_ids)

        if network.id in production_ids:
            warnings.append(
                f"Isolated network {network} is attached to production VM '{source_vm_name}'. "
                f"It is probably not isolated; recovered VMs may be reachable from production."
            )

        for warning in warnings:
            logger.warning(warning)
        return warnings


__all__ = [
    "DEFAULT_NETWORK_PATTERNS",
    "NetworkResolver",
    "rank_isolated_networks",
    "rank_key",
]
