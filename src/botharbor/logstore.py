"""
Append-only, paginated log journal per deployment.

Lines are numbered with a per-deployment monotonic id and are only ever
appended or bulk-cleared. A line mentioning a QR code does not enter the
journal; it replaces the deployment's single QR slot instead, since only the
latest QR payload matters.

Usage:
    store = LogStore(persistence)
    store.append(entry, LogStream.SYSTEM, "Extracted archive.")
    tail = store.get_page(entry)
    older = store.get_page(entry, before_id=tail[0].id)
"""

from __future__ import annotations

import logging
import re
from bisect import bisect_left
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, UTC
from enum import Enum
from threading import Lock
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from .persistence import Persistence
    from .registry import DeploymentEntry

logger = logging.getLogger("botharbor.logs")

QR_MARKER = re.compile(r"QR code", re.IGNORECASE)


class LogStream(str, Enum):
    SYSTEM = "system"
    STDOUT = "stdout"
    STDERR = "stderr"
    INPUT = "input"


@dataclass(frozen=True)
class LogLine:
    """One journal line. ``id`` is unique and increasing within a deployment."""
    id: int
    stream: LogStream
    message: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stream": self.stream.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LogLine":
        return cls(
            id=int(d["id"]),
            stream=LogStream(d.get("stream", "system")),
            message=str(d.get("message", "")),
            timestamp=str(d.get("timestamp") or datetime.now(UTC).isoformat()),
        )


def is_qr_line(message: str) -> bool:
    return bool(QR_MARKER.search(message or ""))


LogSubscriber = Callable[[str, LogLine], None]


class LogStore:
    """Operations over the log journal owned by each DeploymentEntry.

    Subscribers receive ``(kind, line)`` where kind is ``"log"`` or ``"qr"``.
    """

    def __init__(self, persistence: Optional["Persistence"] = None, page_size: int = 100):
        self.persistence = persistence
        self.page_size = page_size
        self._subscribers: Dict[str, List[LogSubscriber]] = defaultdict(list)
        self._sub_lock = Lock()

    def append(self, entry: "DeploymentEntry", stream: LogStream | str, message: str) -> LogLine:
        stream = LogStream(stream)
        text = str(message).rstrip("\r\n")
        with entry.lock:
            line = LogLine(
                id=entry.next_log_id,
                stream=stream,
                message=text,
                timestamp=datetime.now(UTC).isoformat(),
            )
            entry.next_log_id += 1
            if is_qr_line(text):
                kind = "qr"
                entry.qr_log = line
            else:
                kind = "log"
                entry.logs.append(line)
                # Persist inside the entry lock so the durable order matches
                if self.persistence is not None and not entry.deleted:
                    try:
                        self.persistence.append_logs(entry.server_id, entry.deployment_id, [line])
                    except Exception as e:
                        logger.warning(f"[{entry.key}] Failed to persist log line {line.id}: {e}")

        self._notify(entry.key, kind, line)
        return line

    def get_page(
        self,
        entry: "DeploymentEntry",
        before_id: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> List[LogLine]:
        """Return up to page_size lines immediately preceding before_id (or the tail)."""
        size = self.page_size if page_size is None else int(page_size)
        if size <= 0:
            return []
        with entry.lock:
            logs = entry.logs
            end = len(logs) if before_id is None else bisect_left(logs, int(before_id), key=lambda line: line.id)
            start = max(0, end - size)
            return list(logs[start:end])

    def clear(self, entry: "DeploymentEntry") -> None:
        with entry.lock:
            entry.logs.clear()
            entry.qr_log = None
            # Same lock as append, so no line lands between the two clears
            if self.persistence is not None and not entry.deleted:
                self.persistence.clear_logs(entry.server_id, entry.deployment_id)

    def clear_qr(self, entry: "DeploymentEntry") -> None:
        with entry.lock:
            entry.qr_log = None

    def subscribe(self, key: str, handler: LogSubscriber) -> Callable[[], None]:
        """Register *handler* for new lines of one deployment; returns an unsubscribe callable."""
        with self._sub_lock:
            self._subscribers[key].append(handler)

        def unsubscribe() -> None:
            with self._sub_lock:
                handlers = self._subscribers.get(key, [])
                if handler in handlers:
                    handlers.remove(handler)
                if not handlers:
                    self._subscribers.pop(key, None)

        return unsubscribe

    def _notify(self, key: str, kind: str, line: LogLine) -> None:
        with self._sub_lock:
            handlers = list(self._subscribers.get(key, []))
        for handler in handlers:
            try:
                handler(kind, line)
            except Exception as e:
                logger.warning(f"[{key}] Log subscriber error: {e}")
