"""Start-command discovery for extracted bot directories."""

from dataclasses import dataclass, field
from pathlib import Path

from .errors import ValidationError
from .manifest import has_script, read_manifest


# Checked in order; the first ones match the synthesized-manifest detection
ENTRY_FILES = (
    "index.js",
    "main.js",
    "bot.js",
    "start.js",
    "app.js",
    "src/index.js",
    "src/main.js",
    "src/bot.js",
    "src/start.js",
    "dist/index.js",
    "dist/main.js",
    "dist/bot.js",
)

FALLBACK_ENTRY_FILES = ("index.js", "start.js", "main.js", "bot.js")


@dataclass(frozen=True)
class StartCandidate:
    """One way of launching the worker.

    ``command`` is the logical program name (``npm`` or ``node``); the
    supervisor maps it onto the configured binary.
    """
    command: str
    args: tuple[str, ...] = field(default_factory=tuple)
    description: str = ""

    @property
    def display(self) -> str:
        return " ".join([self.command, *self.args])

    def to_dict(self) -> dict:
        return {"command": self.command, "args": list(self.args), "description": self.description}


class StartCommandResolver:
    """Builds the ordered candidate list for a directory. Never executes anything."""

    def resolve(self, directory: str | Path) -> list[StartCandidate]:
        root = Path(directory)
        candidates: list[StartCandidate] = []

        try:
            manifest = read_manifest(root)
        except ValidationError:
            manifest = None
        if has_script(manifest, "start"):
            candidates.append(StartCandidate("npm", ("start",), "npm start (from package.json)"))

        for rel in ENTRY_FILES:
            if (root / rel).is_file():
                candidates.append(StartCandidate("node", (rel,), f"node {rel}"))

        if not candidates:
            candidates.append(StartCandidate("npm", ("start",), "npm start (fallback)"))
            for rel in FALLBACK_ENTRY_FILES:
                candidates.append(StartCandidate("node", (rel,), f"node {rel} (fallback)"))

        return candidates
