"""Shared process helpers for the installer and the supervisor.

Child environments, stream pumping, stdin feeding, heartbeats and
process-group signalling live here so both long-running stages treat child processes the
same way.
"""

import logging
import os
import signal
import subprocess
import time
from queue import Full, Queue
from threading import Event, Thread
from typing import Callable, Iterable, Mapping, Optional

logger = logging.getLogger("botharbor.process")


# ---------------------------------------------------------------------------
# Child environment
# ---------------------------------------------------------------------------

# Enough for node/npm to find themselves, certificates and a temp dir.
# Nothing else from the supervisor's environment reaches a child.
_INHERITED_ENV_KEYS = frozenset({
    "PATH",
    "HOME",
    "USER",
    "LANG",
    "TZ",
    "TMPDIR",
    "SSL_CERT_FILE",
    "SSL_CERT_DIR",
    "NODE_EXTRA_CA_CERTS",
    "NVM_DIR",
})


def build_env(
    extra: Optional[Mapping[str, str]] = None,
    *,
    parent: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """Allow-listed part of *parent* (default: os.environ) plus *extra*."""
    source = os.environ if parent is None else parent
    env = {k: v for k, v in source.items() if k in _INHERITED_ENV_KEYS or k.startswith("LC_")}
    env.update({str(k): str(v) for k, v in (extra or {}).items() if v is not None})
    return env


# ---------------------------------------------------------------------------
# Stream pumping
# ---------------------------------------------------------------------------

def pump_stream(stream, on_line: Callable[[str], None], *, name: str = "pump") -> Thread:
    """Read *stream* line by line in a daemon thread, handing each line to *on_line*.

    The stream is closed when it reaches EOF.
    """
    def _run() -> None:
        try:
            for line in iter(stream.readline, ""):
                s = (line or "").rstrip("\r\n")
                if not s:
                    continue
                try:
                    on_line(s)
                except Exception:
                    logger.exception(f"[{name}] line handler failed")
        except (OSError, ValueError):
            # Stream closed under us (process killed)
            pass
        finally:
            try:
                stream.close()
            except Exception:
                pass

    thr = Thread(target=_run, name=name, daemon=True)
    thr.start()
    return thr


def join_pumps(threads: Iterable[Thread], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    for thr in threads:
        thr.join(max(0.0, deadline - time.monotonic()))


# ---------------------------------------------------------------------------
# Process groups
# ---------------------------------------------------------------------------

def signal_process_group(proc: subprocess.Popen, sig: int) -> bool:
    """Send *sig* to the process group of *proc*; returns False if already gone."""
    if proc.poll() is not None:
        return False
    try:
        pgid = os.getpgid(proc.pid)
        os.killpg(pgid, sig)
        logger.debug(f"Sent signal {sig} to process group {pgid}")
        return True
    except ProcessLookupError:
        return False
    except OSError as e:
        logger.warning(f"Error signalling process group of {proc.pid}: {e}")
        try:
            proc.send_signal(sig)
            return True
        except ProcessLookupError:
            return False


def terminate_process(proc: subprocess.Popen, timeout: float = 10.0) -> Optional[int]:
    """SIGTERM the process group, escalating to SIGKILL after *timeout*.

    Returns the exit code, or None if the process could not be reaped.
    """
    signal_process_group(proc, signal.SIGTERM)
    try:
        return proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {proc.pid} didn't stop gracefully, sending SIGKILL")
    signal_process_group(proc, signal.SIGKILL)
    try:
        return proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        logger.error(f"Process {proc.pid} survived SIGKILL")
        return None


def describe_exit(code: Optional[int]) -> str:
    if code is None:
        return "Process is still running"
    if code < 0:
        signal_name = {
            -9: "SIGKILL",
            -15: "SIGTERM",
            -11: "SIGSEGV",
            -6: "SIGABRT",
        }.get(code, f"signal {-code}")
        return f"Process killed by {signal_name}"
    return f"Process exited with code {code}"


# ---------------------------------------------------------------------------
# Stdin feeding
# ---------------------------------------------------------------------------

class StdinWriter:
    """Feeds lines to a child's stdin from a daemon thread.

    ``put`` never blocks: a child that stops reading fills the bounded queue
    and further lines are refused instead of stalling the caller. ``close``
    ends the thread and closes the pipe once the pending lines are written
    (or at once, if the child has gone away).
    """

    def __init__(self, proc: subprocess.Popen, *, name: str = "stdin", max_pending: int = 100):
        self._proc = proc
        self._queue: "Queue[Optional[str]]" = Queue(maxsize=max_pending)
        self._closed = Event()
        self._thread = Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def put(self, line: str) -> bool:
        """Queue *line* (a newline is added); False if closed or full."""
        if self._closed.is_set():
            return False
        try:
            self._queue.put_nowait(line)
        except Full:
            return False
        return True

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._queue.put_nowait(None)
        except Full:
            # The writer is stuck on a full pipe; it exits once the child dies
            pass

    def join(self, timeout: Optional[float] = None) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self) -> None:
        stdin = self._proc.stdin
        try:
            while stdin is not None:
                line = self._queue.get()
                if line is None:
                    break
                stdin.write(f"{line}\n")
                stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as e:
            logger.debug(f"Stdin of process {self._proc.pid} closed: {e}")
        finally:
            self._closed.set()
            if stdin is not None:
                try:
                    stdin.close()
                except (BrokenPipeError, OSError, ValueError):
                    pass


# ---------------------------------------------------------------------------
# Heartbeat for long operations
# ---------------------------------------------------------------------------

def start_heartbeat(on_log: Callable[[str], None], message: str, interval_s: float) -> Event:
    """Log *message* with the elapsed time every *interval_s* until the returned event is set."""
    stop = Event()
    started = time.monotonic()

    def _run() -> None:
        while not stop.wait(interval_s):
            on_log(f"{message} (still running, {int(time.monotonic() - started)}s)")

    Thread(target=_run, name="heartbeat", daemon=True).start()
    return stop
