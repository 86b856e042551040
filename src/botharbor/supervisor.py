"""Worker process supervision: start trials, stop, restart and auto-restart.

A deployment moves ``starting -> running -> {stopped, error}``. Starting walks
the resolver's candidates in order; each candidate is spawned and given a grace
period, and the first one still alive at the end of it becomes the worker.

The "Cannot find module" check over stderr is a heuristic: it recognizes
Node's usual message and nothing else, so a candidate that fails some other
way is only caught when it exits.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import time
from pathlib import Path
from threading import Event, Thread
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from .config import SupervisorConfig
from .errors import (
    BotharborError,
    PortExhaustionError,
    ProcessSpawnError,
    StartCommandExhaustedError,
    ValidationError,
)
from .logstore import LogStore, LogStream
from .network import PortAllocator
from .process_io import StdinWriter, build_env, describe_exit, join_pumps, pump_stream, terminate_process
from .registry import DeploymentEntry, DeploymentRegistry, Stage
from .resolver import StartCandidate, StartCommandResolver
from .sandbox import resolve_in_root
from .tasks import CancelToken, TaskRunner

if TYPE_CHECKING:
    from .tasks import DeploymentTask

logger = logging.getLogger("botharbor.supervisor")

MISSING_MODULE_RE = re.compile(r"Cannot find module '([^']+)'")
RESTART_MARKER = "RESTARTING"

_POLL_S = 0.05


class ProcessSupervisor:
    """Owns worker processes on behalf of registry entries."""

    def __init__(
        self,
        config: SupervisorConfig,
        registry: DeploymentRegistry,
        logstore: LogStore,
        ports: PortAllocator,
        runner: TaskRunner,
        resolver: Optional[StartCommandResolver] = None,
    ):
        self.config = config
        self.registry = registry
        self.logstore = logstore
        self.ports = ports
        self.runner = runner
        self.resolver = resolver or StartCommandResolver()

    def log(self, entry: DeploymentEntry, stream: LogStream, message: str) -> None:
        self.logstore.append(entry, stream, message)

    def fail(self, entry: DeploymentEntry, message: str, status: str = "Deployment failed") -> None:
        """Put the entry into ``error`` with a log line explaining why."""
        self.log(entry, LogStream.STDERR, f"Error: {message}")
        self.registry.update(entry, stage=Stage.ERROR, status=status, error=message, is_deploying=False)
        logger.warning(f"[{entry.key}] {status}: {message}")

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start_worker(self, entry: DeploymentEntry, token: CancelToken) -> None:
        """Try each start candidate until one survives the grace period.

        Leaves the entry ``running`` on success. On failure the entry is put in
        ``error`` and StartCommandExhaustedError is raised. Raises
        DeploymentCancelled if the token is cancelled along the way.
        """
        token.raise_if_cancelled()
        self._replace_running(entry)

        directory = entry.directory
        if directory is None or not Path(directory).is_dir():
            message = "Deployment not ready. Bot directory missing."
            self.fail(entry, message, status="Start failed")
            raise ValidationError(message)

        self.registry.update(entry, stage=Stage.STARTING, status="Starting bot...", error=None, stop_requested=False)
        candidates = self.resolver.resolve(directory)

        try:
            port = self.ports.allocate(self.config.port_start)
        except PortExhaustionError as e:
            self.fail(entry, str(e), status="Start failed")
            raise
        self.registry.update(entry, port=port)
        self.log(entry, LogStream.SYSTEM, f"Assigning port {port}")

        env: Dict[str, str] = {"PORT": str(port)}
        connection = (entry.external_config or {}).get("connection_string")
        if connection:
            env["MONGODB_URI"] = str(connection)
            self.log(entry, LogStream.SYSTEM, "MongoDB connection string configured.")

        last_error: Optional[str] = None
        try:
            for index, candidate in enumerate(candidates):
                token.raise_if_cancelled()
                self.log(entry, LogStream.SYSTEM, f"Trying start command: {candidate.description}")
                proc, pumps, error = self._trial(entry, candidate, Path(directory), env, token)
                if proc is not None:
                    self._promote(entry, candidate, proc, pumps, token)
                    return
                last_error = error
                if index < len(candidates) - 1:
                    self.log(entry, LogStream.SYSTEM, "Start command failed, trying alternative...")
                    if token.sleep(self.config.candidate_delay_s):
                        token.raise_if_cancelled()
        except BaseException:
            with entry.lock:
                if entry.process is None:
                    self._release_port(entry)
            raise

        self._release_port(entry)
        message = last_error or "All start commands failed"
        self.fail(entry, message, status="All start commands failed")
        raise StartCommandExhaustedError(message, last_error=last_error)

    def _argv(self, candidate: StartCandidate, directory: Path) -> List[str]:
        """Map a candidate onto the configured binaries; no shell is involved."""
        if candidate.command == "npm":
            return [self.config.npm_bin, *candidate.args]
        if candidate.command == "node":
            script = resolve_in_root(directory, candidate.args[0])
            if not script.is_file():
                raise ProcessSpawnError(f"Entry file not found: {candidate.args[0]}")
            return [self.config.node_bin, *candidate.args]
        raise ProcessSpawnError(f"Unsupported start command: {candidate.command}")

    def _spawn(self, argv: List[str], directory: Path, env: Dict[str, str]) -> subprocess.Popen:
        try:
            return subprocess.Popen(
                argv,
                cwd=str(directory),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                env=build_env(env),
                start_new_session=True,
            )
        except OSError as e:
            raise ProcessSpawnError(f"Failed to start {' '.join(argv)}: {e}")

    def _trial(
        self,
        entry: DeploymentEntry,
        candidate: StartCandidate,
        directory: Path,
        env: Dict[str, str],
        token: CancelToken,
    ) -> Tuple[Optional[subprocess.Popen], List[Thread], Optional[str]]:
        """Run one candidate through the grace period.

        Returns ``(proc, pumps, None)`` if it survived, else ``(None, [], error)``.
        """
        try:
            proc = self._spawn(self._argv(candidate, directory), directory, env)
        except BotharborError as e:
            self.log(entry, LogStream.STDERR, e.message)
            return None, [], e.message

        token.attach(proc)
        fatal = Event()
        last_stderr: List[str] = []

        def on_stdout(line: str) -> None:
            self.log(entry, LogStream.STDOUT, line)

        def on_stderr(line: str) -> None:
            m = MISSING_MODULE_RE.search(line)
            if m:
                self.log(entry, LogStream.STDERR, f"Missing module: {m.group(1)}")
                last_stderr[:] = [f"Missing module: {m.group(1)}"]
                fatal.set()
            elif not fatal.is_set():
                last_stderr[:] = [line]
            self.log(entry, LogStream.STDERR, line)

        pumps = [
            pump_stream(proc.stdout, on_stdout, name=f"{entry.key}-out"),
            pump_stream(proc.stderr, on_stderr, name=f"{entry.key}-err"),
        ]

        deadline = time.monotonic() + self.config.start_grace_s
        while time.monotonic() < deadline:
            if proc.poll() is not None or fatal.is_set() or token.cancelled:
                break
            fatal.wait(_POLL_S)

        if token.cancelled:
            token.detach(proc)
            terminate_process(proc, timeout=self.config.stop_timeout_s)
            join_pumps(pumps)
            token.raise_if_cancelled()

        if fatal.is_set():
            self.log(entry, LogStream.SYSTEM, f"{candidate.description} cannot load a module; stopping it.")
            terminate_process(proc, timeout=self.config.stop_timeout_s)
            token.detach(proc)
            join_pumps(pumps)
            return None, [], last_stderr[0] if last_stderr else "Missing module"

        rc = proc.poll()
        if rc is not None:
            token.detach(proc)
            join_pumps(pumps)
            reason = describe_exit(rc)
            self.log(entry, LogStream.STDERR, f"{candidate.description} stopped during startup: {reason}")
            error = f"{reason}: {last_stderr[0]}" if last_stderr else reason
            return None, [], error

        token.detach(proc)
        return proc, pumps, None

    def _promote(
        self,
        entry: DeploymentEntry,
        candidate: StartCandidate,
        proc: subprocess.Popen,
        pumps: List[Thread],
        token: CancelToken,
    ) -> None:
        """Make a surviving candidate the entry's worker."""
        displaced: Optional[subprocess.Popen] = None
        displaced_writer: Optional[StdinWriter] = None
        with entry.lock:
            cancelled = token.cancelled
            if not cancelled:
                if entry.process is not None and entry.process is not proc:
                    # Another start won the race; keep exactly one worker
                    displaced, displaced_writer = entry.process, entry.input_writer
                self.log(entry, LogStream.SYSTEM, f"Bot process started with: {candidate.display} (pid {proc.pid})")
                self.registry.update(
                    entry,
                    process=proc,
                    input_writer=StdinWriter(proc, name=f"{entry.key}-stdin"),
                    stage=Stage.RUNNING,
                    status="Bot is running.",
                    command=candidate.display,
                    started_at=time.monotonic(),
                    auto_restart=self.config.auto_restart,
                    error=None,
                )
        if cancelled:
            terminate_process(proc, timeout=self.config.stop_timeout_s)
            join_pumps(pumps)
            token.raise_if_cancelled()

        if displaced is not None:
            logger.warning(f"[{entry.key}] Replacing worker {displaced.pid} with {proc.pid}")
            if displaced_writer is not None:
                displaced_writer.close()
            terminate_process(displaced, timeout=self.config.stop_timeout_s)

        logger.info(f"[{entry.key}] Running {candidate.display} on port {entry.port} (pid {proc.pid})")
        Thread(
            target=self._monitor,
            args=(entry, proc, pumps),
            name=f"{entry.key}-monitor",
            daemon=True,
        ).start()

    def _replace_running(self, entry: DeploymentEntry) -> None:
        """At most one worker per entry: stop the current one before starting another."""
        with entry.lock:
            old, writer = entry.process, entry.input_writer
            if old is None:
                return
            self.registry.update(entry, process=None, input_writer=None)
        self.log(entry, LogStream.SYSTEM, "Stopping previous bot process before starting a new one.")
        if writer is not None:
            writer.close()
        terminate_process(old, timeout=self.config.stop_timeout_s)
        self._release_port(entry)

    def _release_port(self, entry: DeploymentEntry) -> None:
        with entry.lock:
            port = entry.port
            if port is None:
                return
            self.ports.release(port)
            self.registry.update(entry, port=None)

    # ------------------------------------------------------------------
    # Exit handling and auto-restart
    # ------------------------------------------------------------------

    def _monitor(self, entry: DeploymentEntry, proc: subprocess.Popen, pumps: List[Thread]) -> None:
        rc = proc.wait()
        join_pumps(pumps)
        with entry.lock:
            if entry.process is not proc:
                # Stopped or replaced on purpose
                return
            ran_for = time.monotonic() - (entry.started_at or time.monotonic())
            if entry.input_writer is not None:
                entry.input_writer.close()
            self.registry.update(entry, process=None, input_writer=None)
            self._release_port(entry)
            reason = describe_exit(rc)
            self.log(entry, LogStream.STDERR, f"Bot process exited unexpectedly ({reason}).")
            logger.warning(f"[{entry.key}] Worker {proc.pid} exited: {reason}")

            if not (entry.auto_restart and self.config.auto_restart) or entry.stop_requested:
                if rc == 0:
                    self.registry.update(entry, stage=Stage.STOPPED, status="Bot process exited.")
                else:
                    self.registry.update(entry, stage=Stage.ERROR, status="Bot crashed.", error=reason)
                return

            if ran_for >= self.config.restart_reset_after_s:
                self.registry.update(entry, restart_attempts=0)
            if entry.restart_attempts >= self.config.max_restart_attempts:
                message = f"Bot crashed {entry.restart_attempts} times in a row; giving up ({reason})."
                self.fail(entry, message, status="Auto-restart limit reached")
                return

            attempt = entry.restart_attempts + 1
            delay = self.config.restart_delay_s * (self.config.restart_backoff ** (attempt - 1))
            self.registry.update(
                entry,
                restart_attempts=attempt,
                stage=Stage.STOPPED,
                status=f"Restarting in {delay:g}s (attempt {attempt}/{self.config.max_restart_attempts})",
            )
            self.log(
                entry,
                LogStream.SYSTEM,
                f"Auto-restart {attempt}/{self.config.max_restart_attempts} in {delay:g}s...",
            )
            try:
                task = self.runner.submit(f"{entry.key}:auto-restart", self._delayed_start, entry, delay)
            except RuntimeError as e:
                logger.warning(f"[{entry.key}] Auto-restart not scheduled: {e}")
                return
            self.registry.update(entry, task=task)

    def _delayed_start(self, token: CancelToken, entry: DeploymentEntry, delay: float) -> None:
        if token.sleep(delay):
            token.raise_if_cancelled()
        try:
            self.start_worker(entry, token)
        except BotharborError as e:
            # Already recorded on the entry
            logger.info(f"[{entry.key}] Start failed: {e}")

    # ------------------------------------------------------------------
    # Stop / restart / input
    # ------------------------------------------------------------------

    def cancel_task(self, entry: DeploymentEntry, reason: str) -> None:
        """Cancel the entry's lifecycle task (kills its child) and wait for it to unwind."""
        with entry.lock:
            task: Optional["DeploymentTask"] = entry.task
        if task is None or task.done():
            return
        task.cancel(reason)
        if not task.join(timeout=self.config.stop_timeout_s + 5.0):
            logger.warning(f"[{entry.key}] Task {task.name} did not finish after cancel")

    def stop_worker(self, entry: DeploymentEntry, destructive: bool = False) -> None:
        """Stop the worker; destructive also removes the directory and the entry."""
        with entry.op_lock:
            self.log(entry, LogStream.SYSTEM, "Stopping bot...")
            self.registry.update(entry, stop_requested=True, auto_restart=False)
            self.cancel_task(entry, "stopped")

            with entry.lock:
                proc, writer = entry.process, entry.input_writer
                self.registry.update(entry, process=None, input_writer=None)
            if writer is not None:
                writer.close()
            if proc is not None:
                code = terminate_process(proc, timeout=self.config.stop_timeout_s)
                logger.info(f"[{entry.key}] Worker {proc.pid} stopped ({describe_exit(code)})")
            self._release_port(entry)

            if destructive:
                self._remove_directory(entry)
                self.registry.delete(entry.server_id, entry.deployment_id)
                logger.info(f"[{entry.key}] Deployment removed")
                return

            status = "Bot stopped" if proc is not None else "Bot already stopped"
            self.registry.update(entry, stage=Stage.STOPPED, status=status, is_deploying=False)
            self.log(entry, LogStream.SYSTEM, status)

    def _remove_directory(self, entry: DeploymentEntry) -> None:
        target = entry.base_dir or entry.directory
        if target is None or not Path(target).exists():
            return
        try:
            shutil.rmtree(target)
        except OSError as e:
            logger.warning(f"[{entry.key}] Could not remove {target}: {e}")
            self.log(entry, LogStream.STDERR, f"Could not remove deployment files: {e}")
            raise

    def restart(self, entry: DeploymentEntry) -> "DeploymentTask":
        """Stop, settle, then start again in a background task.

        Concurrent restarts of one entry run one after the other; the later
        one cancels the earlier one's start, so one worker survives.
        """
        with entry.op_lock:
            if entry.deleted:
                raise ValidationError("Deployment was removed.", status_code=409)
            if entry.directory is None or not Path(entry.directory).is_dir():
                raise ValidationError("Deployment not ready. Bot directory missing.")
            self.log(entry, LogStream.SYSTEM, f"{RESTART_MARKER}: Restarting bot...")
            with entry.lock:
                had_process = entry.process is not None
            self.stop_worker(entry)

            self.logstore.clear_qr(entry)
            self.registry.update(entry, error=None, restart_attempts=0, stop_requested=False)

            def _run(token: CancelToken) -> None:
                if had_process and token.sleep(self.config.restart_settle_s):
                    token.raise_if_cancelled()
                try:
                    self.start_worker(entry, token)
                except BotharborError as e:
                    logger.info(f"[{entry.key}] Restart failed: {e}")

            task = self.runner.submit(f"{entry.key}:restart", _run)
            self.registry.update(entry, task=task)
            return task

    def write_input(self, entry: DeploymentEntry, data: str) -> None:
        """Queue one line for the worker's stdin without waiting for the child to read it."""
        with entry.lock:
            writer = entry.input_writer
            if entry.process is None or entry.stage != Stage.RUNNING or writer is None:
                raise ValidationError("Bot is not running.", status_code=409)
        if not writer.put(data):
            if writer.closed:
                raise ValidationError("Bot is not accepting input.", status_code=409)
            raise ValidationError("Bot input buffer is full.", status_code=409)
        self.log(entry, LogStream.INPUT, data)
