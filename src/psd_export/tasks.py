"""
Cancellable background jobs keyed by project id.

:py:class:`TaskRunner` guarantees that at most one job runs per key: starting
a job for a key that already has one cancels the old job and waits for it to
finish before the new one is installed. Cancellation is cooperative; jobs
receive a :py:class:`CancelToken` and poll it.

Example::

    runner = TaskRunner()
    runner.start(project.id, lambda token: processor.run(project.id, token))
    ...
    runner.stop(project.id)  # blocks until the job has finished
"""

import logging
import threading
import time
from typing import Any, Callable, Hashable, Optional

from psd_export.exceptions import Cancelled

logger = logging.getLogger(__name__)


class CancelToken:
    """
    Cooperative cancellation flag.

    :param timeout: optional number of seconds after which the token reports
        cancelled on its own.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = None if timeout is None else time.monotonic() + timeout

    def __repr__(self) -> str:
        return "%s(cancelled=%s)" % (self.__class__.__name__, self.cancelled)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def raise_if_cancelled(self) -> None:
        """Raise :py:class:`~psd_export.exceptions.Cancelled` if cancelled."""
        if self.cancelled:
            raise Cancelled()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. Return the flag."""
        if self._deadline is not None:
            remaining = max(0.0, self._deadline - time.monotonic())
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled


class TaskHandle:
    """Bookkeeping of one running job."""

    def __init__(self, key: Hashable, token: CancelToken):
        self.key = key
        self.token = token
        self.done = threading.Event()
        self.error: Optional[BaseException] = None
        self.thread: Optional[threading.Thread] = None

    def __repr__(self) -> str:
        return "%s(key=%r, done=%s)" % (
            self.__class__.__name__,
            self.key,
            self.done.is_set(),
        )

    def cancel(self) -> None:
        self.token.cancel()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for completion. Return True if the job has finished."""
        return self.done.wait(timeout)


class TaskRunner:
    """
    Run at most one job per key on background threads.

    :param timeout: optional per-job deadline in seconds, applied to the
        tokens of every started job.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._lock = threading.Lock()
        self._tasks: dict[Hashable, TaskHandle] = {}
        self._timeout = timeout

    def start(self, key: Hashable, fn: Callable[[CancelToken], Any]) -> TaskHandle:
        """
        Start ``fn(token)`` on a new thread.

        An existing job for the same key is cancelled and waited for first.
        The lock is never held while waiting.

        :param key: job key, usually a project id.
        :param fn: callable receiving the :py:class:`CancelToken`.
        :return: :py:class:`TaskHandle` of the new job.
        """
        handle = TaskHandle(key, CancelToken(self._timeout))
        while True:
            with self._lock:
                existing = self._tasks.get(key)
                if existing is None:
                    self._tasks[key] = handle
                    break
            logger.info("Cancelling running task %r before restart", key)
            existing.cancel()
            existing.wait()

        thread = threading.Thread(
            target=self._run,
            args=(handle, fn),
            name="psd-export-%s" % (key,),
            daemon=True,
        )
        handle.thread = thread
        thread.start()
        logger.debug("Started task %r", key)
        return handle

    def _run(self, handle: TaskHandle, fn: Callable[[CancelToken], Any]) -> None:
        try:
            fn(handle.token)
        except Cancelled:
            logger.debug("Task %r cancelled", handle.key)
        except Exception as e:
            handle.error = e
            if handle.token.cancelled:
                logger.debug("Task %r failed after cancellation: %s", handle.key, e)
            else:
                logger.exception("Task %r failed", handle.key)
        finally:
            with self._lock:
                if self._tasks.get(handle.key) is handle:
                    del self._tasks[handle.key]
            handle.done.set()

    def stop(self, key: Hashable, timeout: Optional[float] = None) -> bool:
        """
        Cancel the job for ``key`` and block until it has finished.

        :param timeout: optional number of seconds to wait for the job.
        :return: True if a job was running.
        """
        with self._lock:
            handle = self._tasks.get(key)
        if handle is None:
            return False
        handle.cancel()
        logger.info("Stop requested for task %r", key)
        if not handle.wait(timeout):
            logger.warning("Task %r did not stop in time", key)
        return True

    def is_running(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._tasks

    def wait(self, key: Hashable, timeout: Optional[float] = None) -> bool:
        """
        Wait for the job for ``key`` to finish.

        :return: True if no job is running for ``key`` when the call returns.
        """
        with self._lock:
            handle = self._tasks.get(key)
        if handle is None:
            return True
        return handle.wait(timeout)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancel every job and wait for all of them."""
        with self._lock:
            handles = list(self._tasks.values())
        for handle in handles:
            handle.cancel()
        for handle in handles:
            if not handle.wait(timeout):
                logger.warning("Task %r did not finish in time", handle.key)
