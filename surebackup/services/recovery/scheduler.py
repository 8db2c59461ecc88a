"""
Boot-order scheduler.

Targets are grouped into tiers that run in ascending order; targets without a
tier form an implicit last tier. Each tier is split into batches no larger
than the concurrency ceiling. A batch restores all of its targets, waits for
all of them to boot, verifies all of them and cleans all of them up before
the next batch starts.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from surebackup.models.restore import RestoreTarget
from surebackup.models.session import RecoverySession, RunResult
from surebackup.services.recovery.cleanup import CleanupCoordinator
from surebackup.services.recovery.context import OrchestrationContext
from surebackup.services.recovery.worker import RecoveryWorker

logger = logging.getLogger(__name__)

Tier = Tuple[Optional[int], List[RestoreTarget]]


def plan_tiers(
    targets: Sequence[RestoreTarget],
    tier_of: Callable[[str], Optional[int]]
) -> List[Tier]:
    """
    Group targets by boot tier.

    Returns:
        (tier, targets) pairs in ascending tier order, untiered targets last.
        Targets keep their input order inside a tier.
    """
    tiered: Dict[int, List[RestoreTarget]] = {}
    untiered: List[RestoreTarget] = []

    for target in targets:
        tier = tier_of(target.name)
        if tier is None:
            untiered.append(target)
        else:
            tiered.setdefault(tier, []).append(target)

    plan: List[Tier] = [(tier, tiered[tier]) for tier in sorted(tiered)]
    if untiered:
        plan.append((None, untiered))
    return plan


def chunk(items: Sequence, size: int) -> List[list]:
    """Split items into consecutive batches of at most ``size``."""
    if size < 1:
        raise ValueError("Batch size must be at least 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _tier_label(tier: Optional[int]) -> str:
    return f"tier {tier}" if tier is not None else "untiered group"


class BootOrderScheduler:
    """Runs restore targets tier by tier under a concurrency ceiling."""

    def __init__(
        self,
        context: OrchestrationContext,
        worker: RecoveryWorker,
        cleanup: CleanupCoordinator,
        max_concurrent: int = 3,
        continue_on_failure: bool = True
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.context = context
        self.worker = worker
        self.cleanup = cleanup
        self.max_concurrent = max_concurrent
        self.continue_on_failure = continue_on_failure

    def run(
        self,
        targets: Sequence[RestoreTarget],
        tier_of: Optional[Callable[[str], Optional[int]]] = None
    ) -> RunResult:
        """
        Recover, verify and clean up every target.

        When a tier has a failed target, later tiers are skipped and reported.
        Any exception escaping a batch is fatal: every session is cleaned up
        and the exception is re-raised.

        Args:
            targets: Restore targets of this run
            tier_of: Boot tier for a VM name; None means untiered

        Returns:
            Aggregate run result
        """
        tiers = plan_tiers(targets, tier_of or (lambda name: None))
        logger.info(
            f"Scheduling {len(targets)} target(s) in {len(tiers)} tier(s), "
            f"at most {self.max_concurrent} at a time"
        )

        try:
            halted = False
            for index, (tier, members) in enumerate(tiers):
                if halted:
                    self._skip(tier, members)
                    continue

                tier_failed, stopped = self._run_tier(tier, members)
                if tier_failed:
                    self.context.failed_tiers.append(tier)
                    later = tiers[index + 1:]
                    if later:
                        logger.error(
                            f"{_tier_label(tier).capitalize()} failed; skipping "
                            f"{sum(len(m) for _, m in later)} target(s) in later tiers"
                        )
                    halted = True
                elif stopped:
                    halted = True

        except BaseException:
            logger.error("Recovery run aborted, cleaning up all sessions", exc_info=True)
            self.cleanup.cleanup_all()
            raise

        # Sessions from batches that could not clean up are retried once more
        self.cleanup.cleanup_all()

        result = self.context.build_result()
        logger.info(
            f"Run {self.context.run_id} finished: {'success' if result.success else 'failure'}, "
            f"{len(result.failed_results)} failed result(s), {len(result.skipped_targets)} skipped"
        )
        return result

    def _skip(self, tier: Optional[int], members: List[RestoreTarget]) -> None:
        names = [t.name for t in members]
        logger.warning(f"Skipping {_tier_label(tier)}: {', '.join(names)}")
        self.context.skip_targets(names)

    def _run_tier(self, tier: Optional[int], members: List[RestoreTarget]) -> Tuple[bool, bool]:
        """
        Run one tier batch by batch.

        Returns:
            Tuple of (tier failed, remaining batches were skipped)
        """
        logger.info(f"Starting {_tier_label(tier)} with {len(members)} target(s)")
        batches = chunk(members, self.max_concurrent)

        failed = False
        for number, batch in enumerate(batches, start=1):
            logger.info(f"{_tier_label(tier).capitalize()}, batch {number}/{len(batches)}: "
                        f"{', '.join(t.name for t in batch)}")
            self._run_batch(tier, batch)

            if self.context.has_failures(t.name for t in batch):
                failed = True
                if not self.continue_on_failure:
                    rest = [t for later in batches[number:] for t in later]
                    if rest:
                        logger.warning(
                            f"Stopping after first failure, skipping {len(rest)} target(s) "
                            f"in {_tier_label(tier)}"
                        )
                        self.context.skip_targets(t.name for t in rest)
                    return failed, True

        return failed, False

    def _run_batch(self, tier: Optional[int], batch: List[RestoreTarget]) -> List[RecoverySession]:
        with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="recovery") as pool:
            # Restore all
            sessions = list(pool.map(lambda target: self.worker.restore(target, tier), batch))
            live = [s for s in sessions if s is not None]

            # Boot all, each with its own deadline
            list(pool.map(self.worker.power_on, live))

            # Verify all
            list(pool.map(self.worker.verify, live))

        # Clean up all before the next batch
        self.cleanup.cleanup_sessions(live)
        return live
