"""npm install pipeline for an extracted bot directory.

The pipeline is a fixed list of steps. Required steps abort the pipeline on
failure unless a following fallback step recovers; optional steps only log a
warning. Every step streams its output to the deployment log as it runs.
"""

from __future__ import annotations

import logging
import re
import subprocess
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import SupervisorConfig
from .errors import DependencyInstallError
from .logstore import LogStream
from .manifest import has_script
from .process_io import build_env, join_pumps, pump_stream, start_heartbeat, terminate_process
from .tasks import CancelToken

logger = logging.getLogger("botharbor.installer")

StepLog = Callable[[LogStream, str], None]

_VERSION_RE = re.compile(r"v?(\d+)\.\d+")


@dataclass(frozen=True)
class InstallStep:
    name: str
    args: tuple[str, ...]
    description: str
    optional: bool = False
    # Runs only while an earlier required step is still failed
    fallback: bool = False


BASE_STEPS = (
    InstallStep("cache", ("cache", "clean", "--force"), "Cleaning npm cache", optional=True),
    InstallStep("install", ("install",), "Installing dependencies (npm install)"),
    InstallStep(
        "legacy",
        ("install", "--legacy-peer-deps"),
        "Installing with legacy peer dependencies",
        optional=True,
        fallback=True,
    ),
    InstallStep("ci", ("ci",), "Installing dependencies (npm ci)", optional=True, fallback=True),
    InstallStep("audit", ("audit", "fix"), "Fixing vulnerabilities", optional=True),
)

BUILD_STEP = InstallStep("build", ("run", "build"), "Building project (npm run build)")


@dataclass
class StepResult:
    step: InstallStep
    returncode: Optional[int]
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class DependencyInstaller:
    """Runs the install pipeline with the configured npm binary."""

    def __init__(self, config: SupervisorConfig):
        self.config = config

    def build_steps(self, manifest: Optional[Dict[str, Any]]) -> List[InstallStep]:
        steps = list(BASE_STEPS)
        if has_script(manifest, "build"):
            steps.append(BUILD_STEP)
        return steps

    def install(
        self,
        directory: str | Path,
        manifest: Optional[Dict[str, Any]],
        log: StepLog,
        token: Optional[CancelToken] = None,
    ) -> List[StepResult]:
        """Run the pipeline; raises DependencyInstallError when a required step stays failed."""
        token = token or CancelToken()
        token.raise_if_cancelled()
        self.check_node_version(directory, log)

        steps = self.build_steps(manifest)
        if BUILD_STEP not in steps:
            log(LogStream.SYSTEM, "No build script found in package.json. Skipping build step.")

        results: List[StepResult] = []
        failed: Optional[StepResult] = None
        for step in steps:
            token.raise_if_cancelled()
            if step.fallback and failed is None:
                continue
            if not step.fallback and failed is not None:
                break

            result = self.run_step(step, directory, log, token)
            results.append(result)
            token.raise_if_cancelled()

            if result.ok:
                if step.fallback:
                    log(LogStream.SYSTEM, f"Recovered from failed {failed.step.name} step using: {step.description}")
                    failed = None
                continue
            if step.fallback:
                continue
            if step.optional:
                log(LogStream.STDERR, f"Warning: {step.description} failed; continuing.")
                continue
            failed = result

        if failed is not None:
            message = f"{failed.step.description} failed"
            if failed.returncode is not None:
                message += f" with code {failed.returncode}"
            raise DependencyInstallError(message, step=failed.step.name, output=failed.output)
        return results

    def run_step(
        self,
        step: InstallStep,
        directory: str | Path,
        log: StepLog,
        token: CancelToken,
    ) -> StepResult:
        cmd = [self.config.npm_bin, *step.args]
        log(LogStream.SYSTEM, f"{step.description}...")
        logger.info(f"[{Path(directory).name}] Running {' '.join(cmd)}")

        env = build_env(self.config.install_env())
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(directory),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            log(LogStream.STDERR, f"{step.description} failed to start: {e}")
            return StepResult(step, None, str(e))

        tail: deque[str] = deque(maxlen=20)

        def on_stderr(line: str) -> None:
            tail.append(line)
            log(LogStream.STDERR, line)

        token.attach(proc)
        pumps = [
            pump_stream(proc.stdout, lambda line: log(LogStream.STDOUT, line), name=f"npm-{step.name}-out"),
            pump_stream(proc.stderr, on_stderr, name=f"npm-{step.name}-err"),
        ]
        stop = start_heartbeat(
            lambda m: log(LogStream.SYSTEM, m), step.description, self.config.heartbeat_s
        )
        try:
            try:
                rc: Optional[int] = proc.wait(timeout=self.config.install_step_timeout_s)
            except subprocess.TimeoutExpired:
                log(LogStream.STDERR, f"{step.description} timed out after {int(self.config.install_step_timeout_s)}s.")
                terminate_process(proc, timeout=self.config.stop_timeout_s)
                rc = None
        finally:
            stop.set()
            token.detach(proc)
            join_pumps(pumps)

        if rc == 0:
            log(LogStream.SYSTEM, f"{step.description} completed successfully.")
        elif rc is not None and not token.cancelled:
            log(LogStream.STDERR, f"{step.description} failed with code {rc}.")
        return StepResult(step, rc, "\n".join(tail))

    def check_node_version(self, directory: str | Path, log: StepLog) -> Optional[int]:
        """Log the runtime version; returns its major number when it can be parsed."""
        log(LogStream.SYSTEM, "Checking Node.js version...")
        try:
            out = subprocess.run(
                [self.config.node_bin, "--version"],
                cwd=str(directory),
                capture_output=True,
                text=True,
                timeout=15,
                env=build_env(),
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Node version check failed: {e}")
            log(LogStream.STDERR, "Could not determine Node.js version")
            return None

        version = (out.stdout or out.stderr or "").strip()
        if out.returncode != 0 or not version:
            log(LogStream.STDERR, "Could not determine Node.js version")
            return None
        log(LogStream.SYSTEM, f"Using {version}")
        m = _VERSION_RE.search(version)
        major = int(m.group(1)) if m else None
        if major != self.config.recommended_node_major:
            log(LogStream.STDERR, f"Warning: Recommended Node.js v{self.config.recommended_node_major} not detected")
        return major
