"""
Base class for verification checks.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

from surebackup.models.session import TestResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationTarget:
    """The recovered VM a check runs against."""
    vm_name: str
    vm_id: Optional[str] = None
    address: Optional[str] = None


class VerificationCheck(ABC):
    """
    One verification test.

    Subclasses implement ``execute``; ``run`` wraps it so that a check never
    raises. Any exception becomes a failed result with the message as detail.
    """

    name: str = "Check"
    requires_address: bool = True

    def run(self, target: VerificationTarget) -> TestResult:
        """
        Run the check and time it.

        Args:
            target: Recovered VM to test

        Returns:
            TestResult for this (VM, check) pair
        """
        start = time.monotonic()

        if self.requires_address and not target.address:
            passed, detail = False, "VM did not report an IP address"
        else:
            try:
                passed, detail = self.execute(target)
            except Exception as e:
                logger.debug(f"{self.name} check on {target.vm_name} raised", exc_info=True)
                passed, detail = False, f"{type(e).__name__}: {e}"

        duration = time.monotonic() - start
        level = logging.INFO if passed else logging.WARNING
        logger.log(level, f"{self.name} on {target.vm_name}: {'passed' if passed else 'failed'} ({detail})")

        return TestResult(
            vm_name=target.vm_name,
            test_name=self.name,
            passed=passed,
            detail=detail,
            duration_seconds=duration,
        )

    @abstractmethod
    def execute(self, target: VerificationTarget) -> Tuple[bool, str]:
        """
        Perform the check.

        Returns:
            Tuple of (passed, detail)
        """
        pass
