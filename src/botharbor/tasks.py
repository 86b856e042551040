"""Named background tasks with cancellation for deployment lifecycles.

Each deployment's pipeline runs as one ``DeploymentTask``: a future backed by
its own thread plus a ``CancelToken``. There is no shared pool, so a slow
install never holds back another deployment. Stopping a deployment cancels the
token, which also kills whatever child process the task is waiting on.
"""

from __future__ import annotations

import logging
import subprocess
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from threading import Event, Lock, Thread, current_thread
from typing import Any, Callable, Optional, Set

from .process_io import terminate_process

logger = logging.getLogger("botharbor.tasks")


class DeploymentCancelled(Exception):
    """Raised inside a task when its token was cancelled."""


class CancelToken:
    """Cancellation flag that also owns the child process a task is blocked on."""

    def __init__(self, kill_timeout: float = 5.0):
        self._event = Event()
        self._lock = Lock()
        self._process: Optional[subprocess.Popen] = None
        self._kill_timeout = kill_timeout
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if not self._event.is_set():
                self.reason = reason
            self._event.set()
            proc = self._process
        if proc is not None:
            terminate_process(proc, timeout=self._kill_timeout)

    def attach(self, proc: subprocess.Popen) -> None:
        """Register the child the task is currently waiting on."""
        with self._lock:
            self._process = proc
            cancelled = self._event.is_set()
        if cancelled:
            terminate_process(proc, timeout=self._kill_timeout)

    def detach(self, proc: Optional[subprocess.Popen] = None) -> None:
        with self._lock:
            if proc is None or self._process is proc:
                self._process = None

    def sleep(self, seconds: float) -> bool:
        """Interruptible sleep; returns True if the token was cancelled meanwhile."""
        return self._event.wait(max(0.0, seconds))

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise DeploymentCancelled(self.reason or "cancelled")


@dataclass
class DeploymentTask:
    """Handle for one running lifecycle operation."""
    name: str
    token: CancelToken
    future: Future = field(repr=False)

    def done(self) -> bool:
        return self.future.done()

    def cancel(self, reason: str = "cancelled") -> None:
        self.token.cancel(reason)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for completion; returns False on timeout."""
        try:
            self.future.result(timeout=timeout)
        except FutureTimeout:
            return False
        except Exception:
            # The task records its own failure on the deployment entry
            pass
        return True


class TaskRunner:
    """Runs each deployment task on its own daemon thread under a stable name."""

    def __init__(self):
        self._lock = Lock()
        self._threads: Set[Thread] = set()
        self._closed = False

    def submit(
        self,
        name: str,
        fn: Callable[..., Any],
        *args: Any,
        token: Optional[CancelToken] = None,
        **kwargs: Any,
    ) -> DeploymentTask:
        token = token or CancelToken()
        future: Future = Future()
        thread = Thread(
            target=self._run,
            args=(name, future, fn, token, *args),
            kwargs=kwargs,
            name=f"botharbor-{name}",
            daemon=True,
        )
        with self._lock:
            if self._closed:
                raise RuntimeError("Task runner is shut down")
            self._threads.add(thread)
            thread.start()
        return DeploymentTask(name=name, token=token, future=future)

    def _run(
        self,
        name: str,
        future: Future,
        fn: Callable[..., Any],
        token: CancelToken,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        logger.debug(f"Task {name} started")
        try:
            if not future.set_running_or_notify_cancel():
                return
            try:
                result = fn(token, *args, **kwargs)
            except DeploymentCancelled as e:
                logger.info(f"Task {name} cancelled: {e}")
                future.set_result(None)
            except Exception as e:
                logger.exception(f"Task {name} failed")
                future.set_exception(e)
            else:
                future.set_result(result)
        finally:
            logger.debug(f"Task {name} finished")
            with self._lock:
                self._threads.discard(current_thread())

    @property
    def active(self) -> int:
        with self._lock:
            return len(self._threads)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            threads = list(self._threads)
        if wait:
            for thread in threads:
                thread.join()
