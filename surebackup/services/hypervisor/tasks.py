"""
Waiting for asynchronous server tasks.
"""
import logging
from typing import Optional

from surebackup.services.api.adapter import ProtocolAdapter
from surebackup.services.api.entities import EntityKind, TaskEntity, TaskHandle, TaskState
from surebackup.services.hypervisor.errors import TaskFailedError, TaskTimeoutError
from surebackup.services.hypervisor.polling import Poller, PollTimeout

logger = logging.getLogger(__name__)


class TaskWaiter:
    """Polls a task handle until it reaches a terminal state."""

    def __init__(self, adapter: ProtocolAdapter, poller: Optional[Poller] = None, timeout: float = 1800.0):
        self.adapter = adapter
        self.poller = poller or Poller()
        self.timeout = timeout

    def wait(self, handle: TaskHandle, timeout: Optional[float] = None) -> TaskEntity:
        """
        Wait for a task to finish.

        Args:
            handle: Task to wait on
            timeout: Override of the default timeout in seconds

        Returns:
            The terminal task entity (state SUCCEEDED)

        Raises:
            TaskFailedError: Task ended FAILED or CANCELED; carries the server error detail
            TaskTimeoutError: Deadline passed; carries the handle for diagnostics
        """
        timeout = timeout if timeout is not None else self.timeout
        last: dict = {}

        def check() -> Optional[TaskEntity]:
            task = self.adapter.get(EntityKind.TASK, handle.task_id)
            last["state"] = task.state.value
            if task.state.is_terminal:
                return task
            logger.debug(f"Task {handle} is {task.state.value} ({task.percent_complete}%)")
            return None

        logger.info(f"Waiting up to {timeout:.0f}s for task {handle}")
        try:
            task = self.poller.until(check, timeout)
        except PollTimeout:
            logger.error(f"Timed out waiting for task {handle}")
            raise TaskTimeoutError(handle, timeout, last.get("state"))

        if task.state != TaskState.SUCCEEDED:
            detail = task.error_detail or f"task ended in state {task.state.value}"
            logger.error(f"Task {handle} failed: {detail}")
            raise TaskFailedError(handle, detail)

        logger.info(f"Task {handle} succeeded")
        return task
