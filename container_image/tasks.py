import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait

from container_image.exceptions import Cancelled

logger = logging.getLogger(__name__)


class TaskGroup:
    """Run tasks concurrently and wait for all of them

    Leaving the `with` block joins every task. The first failure sets
    `cancel`, cancels the tasks that have not started yet, and is raised
    once the running tasks have returned. Running tasks are expected to
    poll `cancel` at their own suspension points.

    Groups may be nested, every group owns a pool of `max_workers`
    threads so a parent waiting on its children never starves them.
    Sharing one `cancel` event between nested groups cancels the whole
    tree on the first failure.
    """

    def __init__(self, max_workers: int, cancel: threading.Event | None = None):
        self.cancel = cancel if cancel is not None else threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=max_workers)
        self._futures: list[Future] = []
        self._error: BaseException | None = None
        self._lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_val is not None:
                self._abort()
                self._wait()
                # a spawn refused after a task failed reports that failure
                if isinstance(exc_val, Cancelled) and self._failed():
                    raise self._error from exc_val
            else:
                self.join()
        finally:
            self._executor.shutdown(wait=True)

    def spawn(self, fn: Callable, *args, **kwargs) -> Future:
        if self.cancel.is_set():
            raise Cancelled("Task group is cancelled")
        future = self._executor.submit(self._run, fn, *args, **kwargs)
        with self._lock:
            self._futures.append(future)
        future.add_done_callback(self._on_done)
        return future

    def map(self, fn: Callable, items) -> list:
        """Spawn `fn` for every item and join, results are in item order"""
        try:
            for item in items:
                self.spawn(fn, item)
        except Cancelled:
            self._wait()
            if self._failed():
                raise self._error from None
            raise
        return self.join()

    def join(self) -> list:
        self._wait()
        if self._error is not None:
            raise self._error
        return [f.result() for f in self._futures]

    def _wait(self):
        """Wait for every task and record the first failure"""
        wait(self._futures)
        # done callbacks may still be running when wait() returns
        for future in self._futures:
            self._on_done(future)

    def _failed(self) -> bool:
        return self._error is not None and not isinstance(self._error, Cancelled)

    def _run(self, fn: Callable, *args, **kwargs):
        if self.cancel.is_set():
            raise Cancelled("Task group is cancelled")
        return fn(*args, **kwargs)

    def _on_done(self, future: Future):
        if future.cancelled() or future.exception() is None:
            return
        error = future.exception()
        with self._lock:
            # a sibling's Cancelled never hides the failure that caused it
            if self._error is None or (
                isinstance(self._error, Cancelled) and not isinstance(error, Cancelled)
            ):
                self._error = error
        if not isinstance(error, Cancelled):
            logger.debug("Task failed, cancelling siblings: %s", error)
        self._abort()

    def _abort(self):
        self.cancel.set()
        with self._lock:
            futures = list(self._futures)
        for future in futures:
            future.cancel()
