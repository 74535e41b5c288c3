"""In-memory registry of workflow executions."""

import threading
from collections import OrderedDict
from typing import List, Optional

from ..models.core import ExecutionStatusEnum, WorkflowExecution, utc_now
from .exceptions import ExecutionNotFoundError
from .logging import get_logger


logger = get_logger(__name__)


class ExecutionRegistry:
    """
    Tracks executions by id with a bounded size.

    When the registry is full the oldest finished executions are evicted
    first. Running executions are never evicted, so the registry may grow
    past its limit while many runs are in flight.
    """

    def __init__(self, max_executions: int = 100):
        self.max_executions = max_executions
        self._executions: "OrderedDict[str, WorkflowExecution]" = OrderedDict()
        self._lock = threading.RLock()
        logger.info(f"ExecutionRegistry initialized (max_executions={max_executions})")

    def register(self, execution: WorkflowExecution) -> None:
        with self._lock:
            self._executions[execution.id] = execution
            self._executions.move_to_end(execution.id)
            self._evict()

    def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        with self._lock:
            return self._executions.get(execution_id)

    def require(self, execution_id: str) -> WorkflowExecution:
        execution = self.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def dispose(self, execution_id: str) -> bool:
        """Forget an execution. A running execution keeps running but is no longer tracked."""
        with self._lock:
            removed = self._executions.pop(execution_id, None)
        if removed is not None:
            logger.debug(f"Disposed execution {execution_id}")
        return removed is not None

    def list(self) -> List[WorkflowExecution]:
        with self._lock:
            return list(self._executions.values())

    def request_stop(self, execution_id: str) -> bool:
        """Flip a running execution to paused. Returns False if unknown or not running."""
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status != ExecutionStatusEnum.RUNNING:
                return False
            execution.status = ExecutionStatusEnum.PAUSED
            execution.end_time = utc_now()
        logger.info(f"Stop requested for execution {execution_id}")
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._executions)

    def _evict(self) -> None:
        overflow = len(self._executions) - self.max_executions
        if overflow <= 0:
            return
        finished = [
            execution_id for execution_id, execution in self._executions.items()
            if execution.is_finished
        ]
        for execution_id in finished[:overflow]:
            del self._executions[execution_id]
            logger.debug(f"Evicted execution {execution_id} from registry")
