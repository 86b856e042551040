"""Config analysis: does a bot need an external database, and where is it?"""

from __future__ import annotations

import io
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from dotenv import dotenv_values

logger = logging.getLogger("botharbor.analysis")

DATABASE_PACKAGES = ("mongoose", "mongodb")
CONNECTION_ENV_KEYS = ("MONGODB_URI", "MONGO_URI", "MONGO_URL", "DATABASE_URL")
_MONGO_URL_RE = re.compile(r"^mongodb(?:\+srv)?://", re.IGNORECASE)

ATLAS_SUGGESTION = (
    "No connection string was found. Create a free MongoDB Atlas cluster and "
    "set MONGODB_URI in the bot's .env file."
)


@dataclass
class ConfigAnalysis:
    requires_database: bool = False
    connection_string: Optional[str] = None
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requires_database": self.requires_database,
            "connection_string": self.connection_string,
            "suggestion": self.suggestion,
        }


class ConfigAnalyzer(ABC):
    """Collaborator consulted once per deployment, after the manifest is known."""

    @abstractmethod
    def analyze(self, manifest_text: str, env_text: str = "") -> ConfigAnalysis:
        ...


class HeuristicConfigAnalyzer(ConfigAnalyzer):
    """Looks for MongoDB drivers in the manifest and a connection URL in .env."""

    def analyze(self, manifest_text: str, env_text: str = "") -> ConfigAnalysis:
        try:
            manifest = json.loads(manifest_text or "{}")
        except json.JSONDecodeError:
            manifest = {}
        deps: Dict[str, Any] = {}
        if isinstance(manifest, dict):
            for key in ("dependencies", "devDependencies"):
                if isinstance(manifest.get(key), dict):
                    deps.update(manifest[key])

        env = {k: v for k, v in dotenv_values(stream=io.StringIO(env_text or "")).items() if v}
        connection = None
        for key in CONNECTION_ENV_KEYS:
            value = env.get(key)
            # DATABASE_URL is shared with other engines
            if value and (key != "DATABASE_URL" or _MONGO_URL_RE.match(value)):
                connection = value
                break
        if connection is None:
            connection = next((v for v in env.values() if _MONGO_URL_RE.match(v)), None)

        requires = connection is not None or any(pkg in deps for pkg in DATABASE_PACKAGES)
        return ConfigAnalysis(
            requires_database=requires,
            connection_string=connection,
            suggestion=ATLAS_SUGGESTION if requires and not connection else None,
        )
