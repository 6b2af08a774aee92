"""
Exception hierarchy for the Codespaces orchestrator.

Validation and authorization errors are turned into clean failure results at
the service boundary; resource errors keep the original message so callers
can report it as ``Error: <message>``.
"""

from __future__ import annotations


class CodespacesError(Exception):
    """Base class for all orchestrator errors."""


class InvalidActionError(CodespacesError):
    def __init__(self, action: str) -> None:
        super().__init__(f"Invalid action: {action}")
        self.action = action


class InvalidServiceError(CodespacesError):
    def __init__(self, service: str) -> None:
        super().__init__(f"Invalid service: {service}")
        self.service = service


class ResourceError(CodespacesError):
    """
    Raised by a resource manager when the underlying Docker call fails.
    The message is the original Docker error text.
    """

    def __init__(self, message: str, component: str = "") -> None:
        super().__init__(message)
        self.component = component


class LifecycleTransitionError(CodespacesError):
    def __init__(self, environment: str, current: str, target: str) -> None:
        super().__init__(
            f"Environment {environment} cannot move from {current} to {target}"
        )
        self.environment = environment
        self.current = current
        self.target = target


class RollbackAuthorizationError(CodespacesError):
    """Manual rollback requested without one of the allowed roles."""


class ProcedureError(CodespacesError):
    """A rollback procedure step failed. Scoped to that procedure."""


class BackupError(ProcedureError):
    pass


class VerificationError(ProcedureError):
    pass


class ConfigError(CodespacesError):
    pass
