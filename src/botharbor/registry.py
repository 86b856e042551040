"""Deployment registry: serverId -> deploymentId -> DeploymentEntry.

The registry is an explicitly constructed service; there is no module-level
state. The map itself is guarded by one lock, and every entry carries its own
re-entrant lock so stage and process transitions on the same deployment are
atomic while different deployments proceed independently.
"""

from __future__ import annotations

import logging
import subprocess
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from threading import Lock, RLock
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .errors import NotFoundError
from .logstore import LogLine
from .persistence import NullPersistence, Persistence

if TYPE_CHECKING:
    from .process_io import StdinWriter
    from .tasks import DeploymentTask

logger = logging.getLogger("botharbor.registry")


class Stage(str, Enum):
    """Lifecycle stage of a deployment."""
    IDLE = "idle"
    UNPACKING = "unpacking"
    ANALYZING = "analyzing"
    INSTALLING = "installing"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_deploying(self) -> bool:
        return self in (Stage.UNPACKING, Stage.ANALYZING, Stage.INSTALLING)


@dataclass
class DeploymentDetails:
    file_name: Optional[str] = None
    file_list: List[str] = field(default_factory=list)
    manifest: Optional[Dict[str, Any]] = None
    dependencies: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_name": self.file_name,
            "file_list": list(self.file_list),
            "manifest": self.manifest,
            "dependencies": self.dependencies,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "DeploymentDetails":
        d = d or {}
        return cls(
            file_name=d.get("file_name"),
            file_list=list(d.get("file_list") or []),
            manifest=d.get("manifest"),
            dependencies=d.get("dependencies"),
        )


@dataclass
class DeploymentEntry:
    """The unit of ownership for one deployment.

    ``process`` is the live worker and is set only while stage is RUNNING;
    candidate processes under trial are owned by the task's cancel token.

    ``lock`` guards field updates. ``op_lock`` serializes whole lifecycle
    operations (deploy submit, stop, restart) on the entry; it is never taken
    by the background task itself, so an operation may wait for that task.
    """
    deployment_id: str
    server_id: str
    server_name: str = ""
    stage: Stage = Stage.IDLE
    status: str = "Idle"
    logs: List[LogLine] = field(default_factory=list)
    qr_log: Optional[LogLine] = None
    details: DeploymentDetails = field(default_factory=DeploymentDetails)
    external_config: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    is_deploying: bool = False
    base_dir: Optional[Path] = None
    directory: Optional[Path] = None

    process: Optional[subprocess.Popen] = field(default=None, repr=False)
    port: Optional[int] = None
    started_at: Optional[float] = None
    command: Optional[str] = None
    auto_restart: bool = False
    restart_attempts: int = 0
    stop_requested: bool = False
    input_writer: Optional["StdinWriter"] = field(default=None, repr=False)
    task: Optional["DeploymentTask"] = field(default=None, repr=False)
    deleted: bool = False

    next_log_id: int = 1
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    lock: RLock = field(default_factory=RLock, repr=False, compare=False)
    op_lock: RLock = field(default_factory=RLock, repr=False, compare=False)

    @property
    def key(self) -> str:
        return f"{self.server_id}__{self.deployment_id}"

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    def to_state(self) -> Dict[str, Any]:
        """Light, JSON-ready state (no logs) for persistence."""
        with self.lock:
            return {
                "deployment_id": self.deployment_id,
                "server_id": self.server_id,
                "server_name": self.server_name,
                "stage": self.stage.value,
                "status": self.status,
                "details": self.details.to_dict(),
                "external_config": self.external_config,
                "error": self.error,
                "is_deploying": self.is_deploying,
                "port": self.port,
                "restart_attempts": self.restart_attempts,
                "next_log_id": self.next_log_id,
                "created_at": self.created_at,
            }

    def snapshot(self, log_tail: int = 100) -> "DeploymentSnapshot":
        with self.lock:
            return DeploymentSnapshot(
                deployment_id=self.deployment_id,
                server_id=self.server_id,
                server_name=self.server_name,
                stage=self.stage,
                status=self.status,
                logs=list(self.logs[-log_tail:]) if log_tail > 0 else [],
                has_more_logs=len(self.logs) > log_tail,
                qr_log=self.qr_log,
                details=DeploymentDetails.from_dict(self.details.to_dict()),
                external_config=dict(self.external_config) if self.external_config else None,
                error=self.error,
                is_deploying=self.is_deploying,
                port=self.port,
                pid=self.pid,
                restart_attempts=self.restart_attempts,
            )


@dataclass(frozen=True)
class DeploymentSnapshot:
    """Point-in-time, read-only view of a deployment."""
    deployment_id: str
    server_id: str
    server_name: str
    stage: Stage
    status: str
    logs: List[LogLine]
    has_more_logs: bool
    qr_log: Optional[LogLine]
    details: DeploymentDetails
    external_config: Optional[Dict[str, Any]]
    error: Optional[str]
    is_deploying: bool
    port: Optional[int]
    pid: Optional[int]
    restart_attempts: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "server_id": self.server_id,
            "server_name": self.server_name,
            "stage": self.stage.value,
            "status": self.status,
            "logs": [line.to_dict() for line in self.logs],
            "has_more_logs": self.has_more_logs,
            "qr_log": self.qr_log.to_dict() if self.qr_log else None,
            "details": self.details.to_dict(),
            "external_config": self.external_config,
            "error": self.error,
            "is_deploying": self.is_deploying,
            "port": self.port,
            "pid": self.pid,
            "restart_attempts": self.restart_attempts,
        }


_UPDATABLE = {
    "server_name",
    "stage",
    "status",
    "details",
    "external_config",
    "error",
    "is_deploying",
    "base_dir",
    "directory",
    "process",
    "input_writer",
    "port",
    "started_at",
    "command",
    "auto_restart",
    "restart_attempts",
    "stop_requested",
    "task",
}


class DeploymentRegistry:
    """Concurrency-safe directory of deployments, kept in sync with persistence."""

    def __init__(self, persistence: Optional[Persistence] = None):
        self.persistence = persistence or NullPersistence()
        self._deployments: Dict[str, Dict[str, DeploymentEntry]] = {}
        self._lock = Lock()

    def create(self, server_id: str, *, server_name: str = "", file_name: Optional[str] = None) -> str:
        """Create a new entry for server_id and return its deployment id."""
        deployment_id = str(uuid.uuid4())
        entry = DeploymentEntry(
            deployment_id=deployment_id,
            server_id=server_id,
            server_name=server_name,
            stage=Stage.IDLE,
            status="Initializing...",
            details=DeploymentDetails(file_name=file_name),
        )
        self.insert(entry)
        return deployment_id

    def insert(self, entry: DeploymentEntry) -> None:
        with self._lock:
            per_server = self._deployments.setdefault(entry.server_id, {})
            if entry.deployment_id in per_server:
                raise ValueError(f"Deployment {entry.deployment_id} already registered")
            per_server[entry.deployment_id] = entry
        self._save(entry)
        logger.debug(f"[{entry.key}] Registered")

    def get(self, server_id: str, deployment_id: str) -> Optional[DeploymentEntry]:
        with self._lock:
            return self._deployments.get(server_id, {}).get(deployment_id)

    def require(self, server_id: str, deployment_id: str) -> DeploymentEntry:
        entry = self.get(server_id, deployment_id)
        if entry is None:
            raise NotFoundError(f"Deployment not found: {server_id}/{deployment_id}")
        return entry

    def exists(self, server_id: str, deployment_id: str) -> bool:
        return self.get(server_id, deployment_id) is not None

    def delete(self, server_id: str, deployment_id: str) -> Optional[DeploymentEntry]:
        """Drop the entry and its persisted state; later updates to it are not saved."""
        with self._lock:
            per_server = self._deployments.get(server_id, {})
            entry = per_server.pop(deployment_id, None)
            if not per_server:
                self._deployments.pop(server_id, None)
        if entry is None:
            self.persistence.delete(server_id, deployment_id)
            return None
        with entry.lock:
            entry.deleted = True
            self.persistence.delete(server_id, deployment_id)
        logger.debug(f"[{entry.key}] Removed from registry")
        return entry

    def entries(self, server_id: Optional[str] = None) -> List[DeploymentEntry]:
        with self._lock:
            if server_id is not None:
                return list(self._deployments.get(server_id, {}).values())
            return [e for per_server in self._deployments.values() for e in per_server.values()]

    def update(self, entry: DeploymentEntry, **changes: Any) -> DeploymentEntry:
        """Apply *changes* atomically and persist the new state."""
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise AttributeError(f"Cannot update fields: {sorted(unknown)}")
        with entry.lock:
            for name, value in changes.items():
                setattr(entry, name, value)
            if "stage" in changes and "is_deploying" not in changes:
                entry.is_deploying = entry.stage.is_deploying
            entry.updated_at = time.time()
        self._save(entry)
        return entry

    def _save(self, entry: DeploymentEntry) -> None:
        # Under the entry lock so a concurrent delete cannot be overwritten
        with entry.lock:
            if entry.deleted:
                return
            try:
                self.persistence.save(entry.server_id, entry.deployment_id, entry.to_state())
            except Exception as e:
                logger.warning(f"[{entry.key}] Failed to persist state: {e}")

    @staticmethod
    def from_state(state: Dict[str, Any]) -> DeploymentEntry:
        """Rebuild an entry (without process or directory) from persisted state."""
        logs = [LogLine.from_dict(row) for row in state.get("logs") or []]
        next_id = max([int(state.get("next_log_id") or 1)] + [line.id + 1 for line in logs])
        return DeploymentEntry(
            deployment_id=str(state["deployment_id"]),
            server_id=str(state["server_id"]),
            server_name=str(state.get("server_name") or ""),
            stage=Stage(state.get("stage") or Stage.STOPPED.value),
            status=str(state.get("status") or ""),
            logs=logs,
            details=DeploymentDetails.from_dict(state.get("details")),
            external_config=state.get("external_config"),
            error=state.get("error"),
            is_deploying=False,
            next_log_id=next_id,
            created_at=float(state.get("created_at") or time.time()),
        )
