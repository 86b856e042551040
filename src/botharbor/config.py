"""Configuration models for botharbor."""

import os
import tempfile

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from .errors import ValidationError


MIB = 1024 * 1024


def _default_sandbox_root() -> str:
    return str(Path(tempfile.gettempdir()) / "botharbor-sandboxes")


@dataclass
class SupervisorConfig:
    """Tunables for the deployment supervisor.

    Every timeout is in seconds. Binaries are looked up on PATH unless an
    absolute path is given.
    """
    sandbox_root: str = field(default_factory=_default_sandbox_root)
    state_dir: Optional[str] = None
    persist: bool = True

    port_start: int = 10000
    port_end: int = 65535

    max_archive_bytes: int = 100 * MIB
    max_read_bytes: int = 10 * MIB
    log_page_size: int = 100

    start_grace_s: float = 3.0
    candidate_delay_s: float = 1.0
    stop_timeout_s: float = 10.0
    restart_settle_s: float = 2.0
    install_step_timeout_s: float = 600.0
    heartbeat_s: float = 15.0

    auto_restart: bool = True
    max_restart_attempts: int = 5
    restart_delay_s: float = 5.0
    restart_backoff: float = 2.0
    restart_reset_after_s: float = 60.0

    node_bin: str = "node"
    npm_bin: str = "npm"
    recommended_node_major: int = 20
    npm_registry_url: Optional[str] = None

    @property
    def sandbox_path(self) -> Path:
        return Path(self.sandbox_root)

    @property
    def state_path(self) -> Path:
        if self.state_dir:
            return Path(self.state_dir)
        return self.sandbox_path / ".state"

    def install_env(self) -> dict[str, str]:
        """Extra environment for install steps only (never for the worker)."""
        env: dict[str, str] = {}
        if self.npm_registry_url:
            env["NPM_CONFIG_REGISTRY"] = self.npm_registry_url
        return env

    @classmethod
    def from_dict(cls, data: dict) -> "SupervisorConfig":
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            f = known.get(key)
            if f is None or value is None:
                continue
            kwargs[key] = _coerce(key, value, f.type)
        return cls(**kwargs)

    @classmethod
    def from_env(cls, env: Optional[dict[str, str]] = None) -> "SupervisorConfig":
        src = env if env is not None else os.environ
        data = {}
        for f in fields(cls):
            raw = src.get(f"BOTHARBOR_{f.name.upper()}")
            if raw is None:
                continue
            raw = str(raw).strip()
            if raw:
                data[f.name] = raw
        return cls.from_dict(data)

    @classmethod
    def from_yaml(cls, path: Path) -> "SupervisorConfig":
        """Load supervisor configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValidationError(f"Config file must contain a mapping: {path}")
        return cls.from_dict(data.get("supervisor", data))

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        with open(path, "w") as f:
            yaml.dump({"supervisor": self.to_dict()}, f, default_flow_style=False, sort_keys=False)


def _coerce(key: str, value, type_hint):
    hint = str(type_hint)
    try:
        if hint in ("bool", "<class 'bool'>"):
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() in {"1", "true", "yes", "on"}
        if hint in ("int", "<class 'int'>"):
            return int(value)
        if hint in ("float", "<class 'float'>"):
            return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid value for {key}: {value!r}")
    return str(value)


def load_config(path: Optional[str | Path] = None) -> SupervisorConfig:
    """Load configuration from a YAML file, or from the environment when no path is given."""
    if path is None:
        return SupervisorConfig.from_env()
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    return SupervisorConfig.from_yaml(path)
