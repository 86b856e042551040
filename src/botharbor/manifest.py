"""package.json handling: reading, entry-file detection and synthesis."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .errors import ValidationError

logger = logging.getLogger("botharbor.manifest")

MANIFEST_NAME = "package.json"

# Root-level names checked when a manifest has to be synthesized
ROOT_ENTRY_FILES = ("index.js", "main.js", "bot.js", "start.js", "app.js")


def read_manifest(directory: str | Path) -> Optional[Dict[str, Any]]:
    """Return the parsed manifest, or None when the directory has none."""
    path = Path(directory) / MANIFEST_NAME
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid {MANIFEST_NAME}: {e}")
    if not isinstance(data, dict):
        raise ValidationError(f"Invalid {MANIFEST_NAME}: expected a JSON object")
    return data


def has_script(manifest: Optional[Dict[str, Any]], name: str) -> bool:
    scripts = (manifest or {}).get("scripts")
    if not isinstance(scripts, dict):
        return False
    return bool(str(scripts.get(name) or "").strip())


def dependencies_of(manifest: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Merged runtime and dev dependency map."""
    out: Dict[str, str] = {}
    for key in ("dependencies", "devDependencies"):
        deps = (manifest or {}).get(key)
        if isinstance(deps, dict):
            out.update({str(k): str(v) for k, v in deps.items()})
    return out


def detect_entry_file(directory: str | Path) -> str:
    root = Path(directory)
    for name in ROOT_ENTRY_FILES:
        if (root / name).is_file():
            return name
    for path in sorted(root.glob("*.js")):
        if path.is_file() and not path.name.startswith("."):
            return path.name
    return "index.js"


def ensure_manifest(directory: str | Path, deployment_id: str) -> Tuple[Dict[str, Any], bool]:
    """Load the manifest, writing a minimal one first if it is missing.

    Returns ``(manifest, synthesized)``.
    """
    existing = read_manifest(directory)
    if existing is not None:
        return existing, False

    entry = detect_entry_file(directory)
    manifest = {
        "name": f"bot-{deployment_id}",
        "version": "1.0.0",
        "main": entry,
        "scripts": {"start": f"node {entry}"},
        "dependencies": {},
    }
    (Path(directory) / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")
    logger.info(f"Synthesized {MANIFEST_NAME} in {directory} (main={entry})")
    return manifest, True
