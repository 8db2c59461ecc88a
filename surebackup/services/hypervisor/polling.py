"""
Deadline-bounded polling shared by every wait loop.
"""
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


class PollTimeout(Exception):
    """The deadline passed before the check reported completion."""

    def __init__(self, timeout: float, last_value=None):
        super().__init__(f"Condition not met within {timeout:.0f}s")
        self.timeout = timeout
        self.last_value = last_value


@dataclass
class Poller:
    """
    Fixed-interval poll loop with a hard deadline computed once at entry.

    ``clock`` and ``sleep`` are injectable so waits can be tested without
    real time passing.
    """
    interval: float = 5.0
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep

    def until(
        self,
        check: Callable[[], Optional[T]],
        timeout: float,
        observe: Optional[Callable[[], object]] = None
    ) -> T:
        """
        Call ``check`` until it returns something other than None.

        Args:
            check: Returns the final value, or None to keep waiting
            timeout: Seconds before giving up
            observe: Optional callable whose value is attached to the timeout

        Returns:
            The first non-None value returned by check

        Raises:
            PollTimeout: The deadline passed first
        """
        deadline = self.clock() + timeout
        while True:
            result = check()
            if result is not None:
                return result

            remaining = deadline - self.clock()
            if remaining <= 0:
                raise PollTimeout(timeout, observe() if observe else None)
            self.sleep(min(self.interval, remaining))
