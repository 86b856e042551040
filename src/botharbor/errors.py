"""Error taxonomy for botharbor.

Every failure surfaced by the supervisor core is one of these classes so the
API layer can map it to a response without inspecting messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Categorized error types for callers and the HTTP adapter."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PORT_EXHAUSTION = "port_exhaustion"
    DEPENDENCY = "dependency"
    START_EXHAUSTED = "start_exhausted"
    PATH_TRAVERSAL = "path_traversal"
    SPAWN = "spawn"


class BotharborError(Exception):
    """Base class for all supervisor errors."""

    category: ErrorCategory = ErrorCategory.VALIDATION
    status_code: int = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"detail": self.message, "category": self.category.value}


class ValidationError(BotharborError):
    """Oversized or absent archive, bad input, forbidden file operation."""
    category = ErrorCategory.VALIDATION
    status_code = 400


class NotFoundError(BotharborError):
    """Unknown deployment, directory or file."""
    category = ErrorCategory.NOT_FOUND
    status_code = 404


class PortExhaustionError(BotharborError):
    """No bindable port left in the scanned range."""
    category = ErrorCategory.PORT_EXHAUSTION
    status_code = 503


class DependencyInstallError(BotharborError):
    """A required install pipeline step failed."""
    category = ErrorCategory.DEPENDENCY
    status_code = 500

    def __init__(self, message: str, *, step: str = "", output: str = ""):
        super().__init__(message)
        self.step = step
        self.output = output


class StartCommandExhaustedError(BotharborError):
    """Every start candidate failed its trial."""
    category = ErrorCategory.START_EXHAUSTED
    status_code = 500

    def __init__(self, message: str, *, last_error: Optional[str] = None):
        super().__init__(message)
        self.last_error = last_error


class PathTraversalError(BotharborError):
    """A path resolved outside of the sandbox root."""
    category = ErrorCategory.PATH_TRAVERSAL
    status_code = 403


class ProcessSpawnError(BotharborError):
    """The OS refused to launch a child process."""
    category = ErrorCategory.SPAWN
    status_code = 500
