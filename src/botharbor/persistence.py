"""Durable storage for deployment state and logs.

The supervisor only talks to the ``Persistence`` interface. ``JsonFilePersistence``
keeps one directory per deployment with a ``state.json`` (light state, no logs)
and an append-only ``logs.jsonl``.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import time
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

from .logstore import LogLine

logger = logging.getLogger("botharbor.persistence")

# Mirrors the backfill window used when reloading history
MAX_RELOADED_LOGS = 10000


class Persistence(ABC):
    """Storage collaborator consumed by the registry and the log store."""

    @abstractmethod
    def save(self, server_id: str, deployment_id: str, state: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def append_logs(self, server_id: str, deployment_id: str, lines: Iterable[LogLine]) -> None:
        ...

    @abstractmethod
    def load(self, server_id: str, deployment_id: str) -> Optional[Dict[str, Any]]:
        """Return the saved state with a ``logs`` list of dicts, or None."""

    @abstractmethod
    def load_latest(self, server_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def clear_logs(self, server_id: str, deployment_id: str) -> None:
        ...

    @abstractmethod
    def delete(self, server_id: str, deployment_id: str) -> None:
        ...


class NullPersistence(Persistence):
    """Keeps nothing; used when persistence is disabled."""

    def save(self, server_id, deployment_id, state):
        return None

    def append_logs(self, server_id, deployment_id, lines):
        return None

    def load(self, server_id, deployment_id):
        return None

    def load_latest(self, server_id):
        return None

    def clear_logs(self, server_id, deployment_id):
        return None

    def delete(self, server_id, deployment_id):
        return None


def _safe_component(value: str) -> str:
    v = str(value)
    if not v or "/" in v or "\\" in v or v in {".", ".."} or "\x00" in v:
        raise ValueError(f"invalid storage key component: {value!r}")
    return v


class JsonFilePersistence(Persistence):
    """File-backed persistence under ``<root>/<serverId>/<deploymentId>/``."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    def _dir(self, server_id: str, deployment_id: str) -> Path:
        return self.root / _safe_component(server_id) / _safe_component(deployment_id)

    def save(self, server_id: str, deployment_id: str, state: Dict[str, Any]) -> None:
        d = self._dir(server_id, deployment_id)
        payload = dict(state)
        payload.pop("logs", None)
        payload.pop("qr_log", None)
        data = {
            "server_id": server_id,
            "deployment_id": deployment_id,
            "state": payload,
            "updated_at": time.time(),
        }
        with self._lock:
            d.mkdir(parents=True, exist_ok=True)
            tmp = d / "state.json.tmp"
            with open(tmp, "w") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp, d / "state.json")

    def append_logs(self, server_id: str, deployment_id: str, lines: Iterable[LogLine]) -> None:
        d = self._dir(server_id, deployment_id)
        rows = [json.dumps(line.to_dict(), ensure_ascii=False) for line in lines]
        if not rows:
            return
        with self._lock:
            d.mkdir(parents=True, exist_ok=True)
            with open(d / "logs.jsonl", "a", encoding="utf-8") as f:
                f.write("\n".join(rows) + "\n")

    def _read_logs(self, d: Path) -> List[Dict[str, Any]]:
        path = d / "logs.jsonl"
        if not path.exists():
            return []
        rows: List[Dict[str, Any]] = []
        with open(path, encoding="utf-8") as f:
            for raw in f:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    rows.append(json.loads(raw))
                except json.JSONDecodeError:
                    logger.warning(f"Skipping corrupt log row in {path}")
        return rows[-MAX_RELOADED_LOGS:]

    def _read(self, d: Path) -> Optional[Dict[str, Any]]:
        path = d / "state.json"
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Could not read {path}: {e}")
            return None
        state = dict(data.get("state") or {})
        state["logs"] = self._read_logs(d)
        state["updated_at"] = data.get("updated_at", 0)
        return state

    def load(self, server_id: str, deployment_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._read(self._dir(server_id, deployment_id))

    def load_latest(self, server_id: str) -> Optional[Dict[str, Any]]:
        server_dir = self.root / _safe_component(server_id)
        if not server_dir.is_dir():
            return None
        latest: Optional[Dict[str, Any]] = None
        with self._lock:
            for d in server_dir.iterdir():
                if not d.is_dir():
                    continue
                state = self._read(d)
                if state is None:
                    continue
                if latest is None or state.get("updated_at", 0) > latest.get("updated_at", 0):
                    latest = state
        return latest

    def clear_logs(self, server_id: str, deployment_id: str) -> None:
        path = self._dir(server_id, deployment_id) / "logs.jsonl"
        with self._lock:
            if path.exists():
                path.unlink()

    def delete(self, server_id: str, deployment_id: str) -> None:
        d = self._dir(server_id, deployment_id)
        with self._lock:
            if d.exists():
                shutil.rmtree(d)
