from typing import Callable, Optional
import logging
import threading

from dualdb.db.executor import BatchResult

logger = logging.getLogger(__name__)


class ExecutionWorker(threading.Thread):
    """Run a batch in a background thread and report through callbacks.

    ``execute`` is BatchExecutor.execute or Workspace.execute_batch. Uses
    threading.Event to support cancellation; the executor checks it between
    statements and interrupts the statement in flight when it is set.
    """

    def __init__(self, execute: Callable[..., BatchResult], script: str, atomic: bool = False,
                 on_result: Optional[Callable[[BatchResult], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None,
                 on_finished: Optional[Callable[[], None]] = None):
        super().__init__(daemon=True)
        self.execute = execute
        self.script = script
        self.atomic = atomic
        self.on_result = on_result
        self.on_error = on_error
        self.on_finished = on_finished
        self.result: Optional[BatchResult] = None
        self.error: Optional[Exception] = None
        self._stop_event = threading.Event()

    def run(self):
        try:
            self.result = self.execute(self.script, atomic=self.atomic, stop_event=self._stop_event)
            if self.on_result is not None:
                self.on_result(self.result)
        except Exception as e:
            logger.debug("Background batch failed: %s", e)
            self.error = e
            if self.on_error is not None:
                self.on_error(e)
        finally:
            if self.on_finished is not None:
                self.on_finished()

    def stop(self):
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[BatchResult]:
        """Join the thread; re-raise the batch's exception, or return its result."""
        self.join(timeout)
        if self.error is not None:
            raise self.error
        return self.result
