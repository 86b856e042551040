"""BotDeployService: the function boundary used by the API and the CLI.

One instance is created at process start and shared; it owns the registry,
log store, port allocator, task runner and supervisor.

Usage:
    service = BotDeployService(SupervisorConfig())
    deployment_id = service.deploy(archive_bytes, "bot.zip", "My bot", "server-1")
    snapshot = service.get_state("server-1", deployment_id)
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .analysis import ConfigAnalysis, ConfigAnalyzer, HeuristicConfigAnalyzer
from .archive import extract_archive, validate_archive
from .config import SupervisorConfig
from .errors import BotharborError, NotFoundError, ValidationError
from .installer import DependencyInstaller
from .logstore import LogLine, LogStore, LogStream, LogSubscriber
from .manifest import MANIFEST_NAME, dependencies_of, ensure_manifest
from .network import PortAllocator
from .persistence import JsonFilePersistence, NullPersistence, Persistence
from .registry import DeploymentEntry, DeploymentRegistry, DeploymentSnapshot, Stage
from .resolver import StartCandidate, StartCommandResolver
from .sandbox import FileSandbox
from .supervisor import ProcessSupervisor
from .tasks import CancelToken, TaskRunner

logger = logging.getLogger("botharbor.service")

RECOVERED_STATUS = "Recovered after server restart. Re-deploy to run."


def _check_key(value: str, what: str) -> str:
    v = str(value or "").strip()
    if not v or v in {".", ".."} or "/" in v or "\\" in v or "\x00" in v:
        raise ValidationError(f"Invalid {what}: {value!r}")
    return v


class BotDeployService:
    """Deploy, inspect and control bot workers for many tenants."""

    def __init__(
        self,
        config: Optional[SupervisorConfig] = None,
        persistence: Optional[Persistence] = None,
        analyzer: Optional[ConfigAnalyzer] = None,
    ):
        self.config = config or SupervisorConfig()
        self.config.sandbox_path.mkdir(parents=True, exist_ok=True)
        if persistence is None:
            persistence = JsonFilePersistence(self.config.state_path) if self.config.persist else NullPersistence()
        self.persistence = persistence
        self.analyzer = analyzer or HeuristicConfigAnalyzer()

        self.registry = DeploymentRegistry(persistence)
        self.logstore = LogStore(persistence, page_size=self.config.log_page_size)
        self.ports = PortAllocator(self.config.port_start, self.config.port_end)
        self.runner = TaskRunner()
        self.resolver = StartCommandResolver()
        self.installer = DependencyInstaller(self.config)
        self.supervisor = ProcessSupervisor(
            self.config,
            self.registry,
            self.logstore,
            self.ports,
            self.runner,
            resolver=self.resolver,
        )

    # ------------------------------------------------------------------
    # Deploy pipeline
    # ------------------------------------------------------------------

    def deploy(self, archive: bytes, file_name: str, server_name: str, server_id: str) -> str:
        """Accept an archive and run the pipeline in the background; returns the deployment id."""
        server_id = _check_key(server_id, "server id")
        validate_archive(archive, self.config.max_archive_bytes)

        deployment_id = self.registry.create(server_id, server_name=server_name or "", file_name=file_name)
        entry = self.registry.require(server_id, deployment_id)
        base_dir = self.config.sandbox_path / server_id / deployment_id
        with entry.op_lock:
            if entry.deleted:
                logger.info(f"[{entry.key}] Removed before the pipeline was scheduled")
                return deployment_id
            self.registry.update(
                entry,
                base_dir=base_dir,
                directory=base_dir / "bot",
                stage=Stage.UNPACKING,
                status="Unpacking archive...",
            )
            task = self.runner.submit(f"{entry.key}:deploy", self._pipeline, entry, archive)
            self.registry.update(entry, task=task)
        logger.info(f"[{entry.key}] Deployment accepted ({file_name}, {len(archive)} bytes)")
        return deployment_id

    def _log(self, entry: DeploymentEntry, stream: LogStream, message: str) -> None:
        self.logstore.append(entry, stream, message)

    def _pipeline(self, token: CancelToken, entry: DeploymentEntry, archive: bytes) -> None:
        directory = Path(entry.directory)
        try:
            # A stop may have landed between scheduling and this thread starting
            token.raise_if_cancelled()
            self._log(entry, LogStream.SYSTEM, f"Starting deployment of {entry.details.file_name or 'archive'}...")
            file_list = extract_archive(archive, directory)
            self._log(entry, LogStream.SYSTEM, f"Extracted {len(file_list)} top-level entries.")
            details = entry.details
            details.file_list = file_list
            self.registry.update(entry, details=details)
            token.raise_if_cancelled()

            self.registry.update(entry, stage=Stage.ANALYZING, status="Analyzing project...")
            manifest, synthesized = ensure_manifest(directory, entry.deployment_id)
            if synthesized:
                self._log(entry, LogStream.SYSTEM, f"Created package.json with entry point: {manifest['main']}")
            else:
                self._log(entry, LogStream.SYSTEM, "Found existing package.json")
            details.manifest = manifest
            details.dependencies = dependencies_of(manifest)
            self.registry.update(entry, details=details)

            self._log(entry, LogStream.SYSTEM, "Analyzing dependencies...")
            analysis = self._analyze(entry, directory)
            if analysis is not None:
                self.registry.update(entry, external_config=analysis.to_dict())
                if analysis.suggestion:
                    self._log(entry, LogStream.SYSTEM, analysis.suggestion)
            token.raise_if_cancelled()

            self.registry.update(entry, stage=Stage.INSTALLING, status="Installing dependencies...")
            self.installer.install(
                directory,
                manifest,
                lambda stream, message: self._log(entry, stream, message),
                token,
            )
            self.registry.update(entry, status="Dependencies installed.")

            self.supervisor.start_worker(entry, token)
        except BotharborError as e:
            if entry.stage is not Stage.ERROR:
                self.supervisor.fail(entry, e.message)
        except OSError as e:
            logger.exception(f"[{entry.key}] Deployment failed")
            self.supervisor.fail(entry, str(e))

    def _analyze(self, entry: DeploymentEntry, directory: Path) -> Optional[ConfigAnalysis]:
        try:
            manifest_text = (directory / MANIFEST_NAME).read_text(encoding="utf-8")
            env_path = directory / ".env"
            env_text = env_path.read_text(encoding="utf-8") if env_path.is_file() else ""
            return self.analyzer.analyze(manifest_text, env_text)
        except Exception as e:
            logger.warning(f"[{entry.key}] Config analysis failed: {e}")
            self._log(entry, LogStream.STDERR, f"Warning: config analysis failed: {e}")
            return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exists(self, server_id: str, deployment_id: str) -> bool:
        return self.registry.exists(server_id, deployment_id)

    def get_state(self, server_id: str, deployment_id: str) -> Optional[DeploymentSnapshot]:
        entry = self.registry.get(server_id, deployment_id)
        if entry is None:
            return None
        return entry.snapshot(log_tail=self.config.log_page_size)

    def get_log_page(
        self,
        server_id: str,
        deployment_id: str,
        before_id: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> List[LogLine]:
        entry = self.registry.require(server_id, deployment_id)
        return self.logstore.get_page(entry, before_id=before_id, page_size=page_size)

    def get_server_name(self, server_id: str, deployment_id: str) -> Optional[str]:
        entry = self.registry.get(server_id, deployment_id)
        return entry.server_name if entry is not None else None

    def subscribe_logs(self, server_id: str, deployment_id: str, handler: LogSubscriber) -> Callable[[], None]:
        entry = self.registry.require(server_id, deployment_id)
        return self.logstore.subscribe(entry.key, handler)

    def candidates(self, server_id: str, deployment_id: str) -> List[StartCandidate]:
        entry = self.registry.require(server_id, deployment_id)
        if entry.directory is None:
            return []
        return self.resolver.resolve(entry.directory)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def write_input(self, server_id: str, deployment_id: str, data: str) -> None:
        self.supervisor.write_input(self.registry.require(server_id, deployment_id), data)

    def stop(self, server_id: str, deployment_id: str) -> None:
        self.supervisor.stop_worker(self.registry.require(server_id, deployment_id), destructive=False)

    def complete_stop(self, server_id: str, deployment_id: str) -> None:
        self.supervisor.stop_worker(self.registry.require(server_id, deployment_id), destructive=True)

    def restart(self, server_id: str, deployment_id: str) -> None:
        self.supervisor.restart(self.registry.require(server_id, deployment_id))

    def clear_logs(self, server_id: str, deployment_id: str) -> None:
        self.logstore.clear(self.registry.require(server_id, deployment_id))

    def reset(self, server_id: str, deployment_id: str) -> None:
        """Forget a deployment entirely, including one known only to persistence."""
        entry = self.registry.get(server_id, deployment_id)
        if entry is not None:
            self.supervisor.stop_worker(entry, destructive=True)
            return

        server_id = _check_key(server_id, "server id")
        deployment_id = _check_key(deployment_id, "deployment id")
        base_dir = self.config.sandbox_path / server_id / deployment_id
        if self.persistence.load(server_id, deployment_id) is None and not base_dir.exists():
            raise NotFoundError(f"Deployment not found: {server_id}/{deployment_id}")
        self.persistence.delete(server_id, deployment_id)
        if base_dir.exists():
            shutil.rmtree(base_dir)
        logger.info(f"[{server_id}__{deployment_id}] Reset persisted deployment")

    def recover_latest(self, server_id: str) -> Optional[DeploymentSnapshot]:
        """Reload the tenant's most recent persisted deployment as ``stopped``."""
        state = self.persistence.load_latest(_check_key(server_id, "server id"))
        if state is None:
            return None
        if self.registry.exists(server_id, str(state.get("deployment_id"))):
            return None

        entry = DeploymentRegistry.from_state(state)
        entry.stage = Stage.STOPPED
        entry.status = RECOVERED_STATUS
        base_dir = self.config.sandbox_path / entry.server_id / entry.deployment_id
        if (base_dir / "bot").is_dir():
            entry.base_dir = base_dir
            entry.directory = base_dir / "bot"
        self.registry.insert(entry)
        self._log(entry, LogStream.SYSTEM, "Server restarted. Recovering latest deployment state.")
        logger.info(f"[{entry.key}] Recovered from persistence")
        return entry.snapshot(log_tail=self.config.log_page_size)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _sandbox(self, server_id: str, deployment_id: str) -> FileSandbox:
        entry = self.registry.require(server_id, deployment_id)
        if entry.directory is None or not Path(entry.directory).is_dir():
            raise NotFoundError("Deployment files are not available.")
        return FileSandbox(entry.directory, max_read_bytes=self.config.max_read_bytes)

    def list_files(self, server_id: str, deployment_id: str, path: str = "") -> List[Dict[str, Any]]:
        return [node.to_dict() for node in self._sandbox(server_id, deployment_id).list(path)]

    def read_file(self, server_id: str, deployment_id: str, path: str) -> str:
        return self._sandbox(server_id, deployment_id).read_file(path)

    def write_file(self, server_id: str, deployment_id: str, path: str, content: str) -> None:
        self._sandbox(server_id, deployment_id).write_file(path, content)

    def create_file(self, server_id: str, deployment_id: str, path: str) -> Dict[str, Any]:
        return self._sandbox(server_id, deployment_id).create_new_file(path).to_dict()

    def delete_file(self, server_id: str, deployment_id: str, path: str) -> None:
        self._sandbox(server_id, deployment_id).delete(path)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Stop every worker (keeping files) and wait for background tasks."""
        for entry in self.registry.entries():
            try:
                self.supervisor.stop_worker(entry, destructive=False)
            except BotharborError as e:
                logger.warning(f"[{entry.key}] Stop during shutdown failed: {e}")
        self.runner.shutdown(wait=True)
        self.ports.release_all()
        logger.info("Service shut down")
