"""Ordered single-worker task queue.

This module provides:
- SerialQueue: Runs submitted callables one at a time, in submission order,
  on a dedicated worker thread

Used wherever messages arrive off the caller's thread but must be handled
in arrival order without overlapping: each subscription delivers its
payloads through one, and the orchestrator funnels remote pushes and
watcher batches through another.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

Task = Callable[[], None]

_STOP = object()


class SerialQueue:
    """Thread-safe FIFO of tasks with concurrency 1.

    Tasks run on a lazily started daemon worker. A task that raises does not
    stop the worker; the exception is passed to on_error (or logged).

    Usage:
        q = SerialQueue(name="remote-changes")
        q.put(lambda: handle(message))
        q.idle()
        q.close()
    """

    def __init__(
        self,
        name: str = "SerialQueue",
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            name: Worker thread name, used in logs.
            on_error: Called with any exception a task raises.
        """
        self._name = name
        self._on_error = on_error
        self._tasks: queue.Queue[object] = queue.Queue()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending = 0
        self._closed = False
        self._thread: threading.Thread | None = None

    @property
    def pending(self) -> int:
        """Number of tasks queued or running."""
        with self._lock:
            return self._pending

    @property
    def closed(self) -> bool:
        """Whether the queue has been closed."""
        return self._closed

    def put(self, task: Task) -> None:
        """Schedule a task to run after every previously submitted task.

        Raises:
            RuntimeError: If the queue is closed.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError(f"{self._name} is closed")
            self._pending += 1
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
                self._thread.start()
        self._tasks.put(task)

    def idle(self, timeout: float | None = None) -> bool:
        """Block until every submitted task has finished.

        Args:
            timeout: Maximum seconds to wait (None = forever).

        Returns:
            True if the queue drained, False on timeout.
        """
        if self._thread is not None and threading.current_thread() is self._thread:
            raise RuntimeError("idle() called from inside a queued task")
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def clear(self) -> int:
        """Drop every task that hasn't started yet.

        Returns:
            Number of tasks dropped.
        """
        dropped = 0
        while True:
            try:
                item = self._tasks.get_nowait()
            except queue.Empty:
                break
            if item is _STOP:
                self._tasks.put(_STOP)
                break
            dropped += 1

        if dropped:
            with self._idle:
                self._pending -= dropped
                self._idle.notify_all()
            logger.debug("%s dropped %d pending tasks", self._name, dropped)
        return dropped

    def close(self, wait: bool = True, timeout: float | None = 5.0) -> None:
        """Stop accepting tasks and shut down the worker.

        Args:
            wait: Finish already-queued tasks before stopping.
            timeout: Maximum seconds to wait for the worker to exit.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread

        if not wait:
            self.clear()

        self._tasks.put(_STOP)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _run(self) -> None:
        while True:
            task = self._tasks.get()
            if task is _STOP:
                break

            try:
                task()  # type: ignore[operator]
            except Exception as e:
                if self._on_error is not None:
                    self._on_error(e)
                else:
                    logger.error("%s task failed: %s", self._name, e, exc_info=True)
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()
