from __future__ import annotations

import concurrent.futures
import threading
from typing import Any, Callable, Optional, Set

from autovault.logging import get_logger


class TaskRunner:
    """Detached side effects (audit writes, notification emails).

    The caller never waits on the result. Failures are logged from a done
    callback so they stay observable without affecting the request.
    """

    DEFAULT_WORKERS = 4
    MAX_WORKERS = 16

    def __init__(self, workers: int = DEFAULT_WORKERS) -> None:
        self.logger = get_logger(__name__)
        workers = min(max(1, workers), self.MAX_WORKERS)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="autovault-task"
        )
        self._executor_shutdown = False
        self._pending: Set[concurrent.futures.Future] = set()
        self._pending_lock = threading.Lock()

    def submit(
        self, label: str, func: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Optional[concurrent.futures.Future]:
        if self._executor_shutdown:
            self.logger.warning("detached_task_dropped", task=label)
            return None
        future = self._executor.submit(func, *args, **kwargs)
        with self._pending_lock:
            self._pending.add(future)

        def _on_done(done: concurrent.futures.Future) -> None:
            with self._pending_lock:
                self._pending.discard(done)
            if done.cancelled():
                self.logger.warning("detached_task_cancelled", task=label)
                return
            exc = done.exception()
            if exc is not None:
                self.logger.error(
                    "detached_task_failed",
                    task=label,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            elif done.result() is False:
                self.logger.warning("detached_task_unsuccessful", task=label)

        future.add_done_callback(_on_done)
        return future

    def drain(self, timeout: float = 5.0) -> None:
        """Wait for everything submitted so far."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            concurrent.futures.wait(pending, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work. Pending tasks run to completion when ``wait`` is set."""
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        try:
            self._executor.shutdown(wait=wait, cancel_futures=not wait)
            self.logger.info("task_runner_shutdown", wait=wait)
        except RuntimeError as exc:
            self.logger.warning("task_runner_shutdown_error", error=str(exc))
