"""botharbor – multi-tenant bot deployment supervisor"""

__version__ = "0.1.0"

from .config import SupervisorConfig, load_config
from .errors import (
    BotharborError,
    DependencyInstallError,
    ErrorCategory,
    NotFoundError,
    PathTraversalError,
    PortExhaustionError,
    ProcessSpawnError,
    StartCommandExhaustedError,
    ValidationError,
)
from .logstore import LogLine, LogStore, LogStream
from .network import PortAllocator, find_free_port
from .persistence import JsonFilePersistence, NullPersistence, Persistence
from .registry import DeploymentEntry, DeploymentRegistry, DeploymentSnapshot, Stage
from .resolver import StartCandidate, StartCommandResolver
from .sandbox import FileSandbox
from .service import BotDeployService

__all__ = [
    "__version__",
    "SupervisorConfig",
    "load_config",
    "BotharborError",
    "DependencyInstallError",
    "ErrorCategory",
    "NotFoundError",
    "PathTraversalError",
    "PortExhaustionError",
    "ProcessSpawnError",
    "StartCommandExhaustedError",
    "ValidationError",
    "LogLine",
    "LogStore",
    "LogStream",
    "PortAllocator",
    "find_free_port",
    "JsonFilePersistence",
    "NullPersistence",
    "Persistence",
    "DeploymentEntry",
    "DeploymentRegistry",
    "DeploymentSnapshot",
    "Stage",
    "StartCandidate",
    "StartCommandResolver",
    "FileSandbox",
    "BotDeployService",
]
