"""Archive validation and safe extraction into a deployment directory."""

from __future__ import annotations

import io
import logging
import shutil
import zipfile
from pathlib import Path
from typing import List

from .errors import ValidationError
from .sandbox import resolve_in_root

logger = logging.getLogger("botharbor.archive")


def validate_archive(data: bytes | None, max_bytes: int) -> None:
    if not data:
        raise ValidationError("No file uploaded.")
    if len(data) > max_bytes:
        raise ValidationError(
            f"File size exceeds the {max_bytes // (1024 * 1024)}MB limit.",
            status_code=413,
        )


def extract_archive(data: bytes, target: str | Path) -> List[str]:
    """Extract a zip archive into *target* and return its top-level names.

    Every member is resolved against *target* before it is written, so
    entries such as ``../x`` or absolute names are refused.
    """
    dest = Path(target)
    dest.mkdir(parents=True, exist_ok=True)
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise ValidationError(f"Invalid archive: {e}")

    with zf:
        for info in zf.infolist():
            name = info.filename
            if not name or name.startswith("__MACOSX/"):
                continue
            out = resolve_in_root(dest, name)
            if info.is_dir():
                out.mkdir(parents=True, exist_ok=True)
                continue
            out.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info) as src, open(out, "wb") as dst:
                shutil.copyfileobj(src, dst)

    _flatten_single_root(dest)
    names = sorted(p.name for p in dest.iterdir())
    logger.debug(f"Extracted {len(names)} top-level entries into {dest}")
    return names


def _flatten_single_root(dest: Path) -> None:
    """Hoist the contents of a lone top-level folder (``bot-main/...``) into *dest*."""
    children = [p for p in dest.iterdir() if p.name != "__MACOSX"]
    if len(children) != 1 or not children[0].is_dir():
        return
    if (dest / "package.json").exists():
        return
    inner = children[0]
    if (inner / inner.name).exists():
        return
    for item in list(inner.iterdir()):
        shutil.move(str(item), str(dest / item.name))
    inner.rmdir()
