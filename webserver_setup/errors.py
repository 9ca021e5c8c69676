# ABOUTME: Exception hierarchy for host provisioning runs
# ABOUTME: Validation errors abort a run, the rest are collected per artifact

from typing import Optional


class SetupError(Exception):
    """Base class for every provisioning failure"""


class ValidationError(SetupError):
    """An operator answer or answer combination is invalid"""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class RenderError(SetupError):
    """A spec cannot be rendered into the requested artifact"""


class WriteError(SetupError):
    def __init__(self, path: str, message: str):
        self.path = path
        self.message = message
        super().__init__(f"Failed to write {path}: {message}")


class ActivationError(SetupError):
    """An artifact was written but could not be made live"""

    def __init__(self, kind: str, path: str, diagnostic: str):
        self.kind = kind
        self.path = path
        self.diagnostic = diagnostic
        super().__init__(f"{kind} ({path}): {diagnostic}")


class CollaboratorError(SetupError):
    """An external tool (package manager, CA, VCS, supervisor) failed"""

    def __init__(self, name: str, message: str, required: bool = False,
                 detail: Optional[str] = None):
        self.name = name
        self.message = message
        self.required = required
        self.detail = detail or ""
        super().__init__(f"{name}: {message}")
