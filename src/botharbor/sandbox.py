"""Path-validated file access rooted at a deployment's private directory."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, List

from .errors import NotFoundError, PathTraversalError, ValidationError

logger = logging.getLogger("botharbor.sandbox")

DEFAULT_MAX_READ_BYTES = 10 * 1024 * 1024


def resolve_in_root(root: str | Path, relative_path: str | Path) -> Path:
    """Resolve *relative_path* against *root*, refusing anything that escapes it.

    The check runs on the fully resolved path (``..`` collapsed, symlinks
    followed), never on the raw string.
    """
    raw = "" if relative_path is None else str(relative_path)
    if "\x00" in raw:
        raise ValidationError("invalid path")
    root_r = Path(root).resolve()
    target = (root_r / raw).resolve()
    if target != root_r and not target.is_relative_to(root_r):
        raise PathTraversalError(f"Access denied: path escapes sandbox: {raw}")
    return target


@dataclass
class FileNode:
    name: str
    type: str  # "file" | "directory"
    path: str
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FileSandbox:
    """File operations confined to one sandbox root."""

    def __init__(self, root: str | Path, max_read_bytes: int = DEFAULT_MAX_READ_BYTES):
        self.root = Path(root)
        self.max_read_bytes = max_read_bytes

    def resolve(self, relative_path: str | Path = "") -> Path:
        if not self.root.is_dir():
            raise NotFoundError("Sandbox directory is not available")
        return resolve_in_root(self.root, relative_path)

    def _rel(self, target: Path) -> str:
        rel = target.relative_to(self.root.resolve())
        return rel.as_posix() if str(rel) != "." else ""

    def list(self, path: str = "") -> List[FileNode]:
        """List one directory; directories first, then by name."""
        target = self.resolve(path)
        if not target.exists():
            raise NotFoundError(f"Directory not found: {path}")
        if not target.is_dir():
            raise ValidationError(f"Not a directory: {path}")

        base = self._rel(target)
        nodes: List[FileNode] = []
        for child in target.iterdir():
            try:
                st = child.stat()
            except OSError:
                # Dangling symlink
                continue
            nodes.append(
                FileNode(
                    name=child.name,
                    type="directory" if child.is_dir() else "file",
                    path=f"{base}/{child.name}" if base else child.name,
                    size=int(st.st_size),
                )
            )
        nodes.sort(key=lambda n: (n.type != "directory", n.name))
        return nodes

    def read_file(self, path: str) -> str:
        target = self.resolve(path)
        if not target.exists():
            raise NotFoundError(f"File not found: {path}")
        if target.is_dir():
            raise ValidationError("Cannot read content of a directory.")
        size = target.stat().st_size
        if size > self.max_read_bytes:
            raise ValidationError(
                f"File is too large to display ({size} bytes, max {self.max_read_bytes}).",
                status_code=413,
            )
        return target.read_text(encoding="utf-8", errors="replace")

    def write_file(self, path: str, content: str) -> None:
        target = self.resolve(path)
        if target == self.root.resolve() or target.is_dir():
            raise ValidationError(f"Cannot write to a directory: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        logger.debug(f"Wrote {target} ({len(content)} chars)")

    def create_new_file(self, path: str) -> FileNode:
        """Create an empty file, or a directory when *path* ends with a separator."""
        raw = str(path or "")
        as_dir = raw.endswith(("/", "\\"))
        target = self.resolve(raw.rstrip("/\\"))
        if target == self.root.resolve() or target.exists() or target.is_symlink():
            raise ValidationError(f"Path already exists: {path}")
        if as_dir:
            target.mkdir(parents=True)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.touch(exist_ok=False)
        return FileNode(
            name=target.name,
            type="directory" if as_dir else "file",
            path=self._rel(target),
            size=0,
        )

    def delete(self, path: str) -> None:
        target = self.resolve(path)
        if target == self.root.resolve():
            raise ValidationError("Cannot delete the sandbox root.")
        if not target.exists():
            raise NotFoundError(f"File not found: {path}")
        if target.is_dir():
            shutil.rmtree(target)
        else:
            target.unlink()
        logger.debug(f"Deleted {target}")
