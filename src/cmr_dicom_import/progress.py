"""Optional progress reporting. Sinks only observe; they never change control flow."""

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class ProgressTask(Protocol):
    def increment(self, n: int = 1) -> None: ...

    def set_finished(self) -> None: ...


class ProgressSink(Protocol):
    def emit_task(self, total_steps: int, label: str) -> ProgressTask: ...


class _NullTask:
    def increment(self, n: int = 1) -> None:
        pass

    def set_finished(self) -> None:
        pass


class NullProgress:
    """Progress sink that discards everything."""

    def emit_task(self, total_steps: int, label: str) -> ProgressTask:
        return _NullTask()


class LoggingTask:
    """Counts steps and logs at DEBUG each time another tenth of the task completes."""

    def __init__(self, total_steps: int, label: str, log: logging.Logger):
        self.total_steps = max(int(total_steps), 1)
        self.label = label
        self.current = 0
        self.finished = False
        self._log = log
        self._last_decile = 0

    def increment(self, n: int = 1) -> None:
        self.current = min(self.current + n, self.total_steps)
        decile = (10 * self.current) // self.total_steps
        if decile > self._last_decile:
            self._last_decile = decile
            if self._log.isEnabledFor(logging.DEBUG):
                self._log.debug(f"{self.label}: {self.current}/{self.total_steps}")

    def set_finished(self) -> None:
        self.current = self.total_steps
        self.finished = True
        if self._log.isEnabledFor(logging.DEBUG):
            self._log.debug(f"{self.label}: done")


class LoggingProgress:
    """Progress sink reporting through the logging module."""

    def __init__(self, log: logging.Logger = None):
        self._log = log or logger
        self.tasks = []

    def emit_task(self, total_steps: int, label: str) -> LoggingTask:
        task = LoggingTask(total_steps, label, self._log)
        self.tasks.append(task)
        return task
