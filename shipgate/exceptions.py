"""
Shipgate Exceptions Module

Custom exception classes for the shipgate pipeline orchestrator.
Centralized exception definitions for consistent error handling.

Propagation policy:
    - ``ConfigurationError`` surfaces before any stage runs.
    - ``StageExecutionError`` follows the stage's declared gate policy.
    - ``InfrastructureError`` / ``ServiceUnavailable`` always abort the run.
"""

from typing import Optional

__all__ = [
    "ShipgateError",
    "ConfigurationError",
    "StageExecutionError",
    "InfrastructureError",
    "ServiceUnavailable",
]


class ShipgateError(Exception):
    """Base exception for all shipgate errors"""

    def __init__(self, message: str, stage_name: Optional[str] = None):
        super().__init__(message)
        self.stage_name = stage_name


class ConfigurationError(ShipgateError):
    """Raised when required input is invalid or missing; the run never starts"""
    pass


class StageExecutionError(ShipgateError):
    """Raised when an operation ran and reported a failure or findings"""

    def __init__(
        self,
        message: str,
        stage_name: Optional[str] = None,
        exit_code: Optional[int] = None,
    ):
        super().__init__(message, stage_name=stage_name)
        self.exit_code = exit_code


class InfrastructureError(ShipgateError):
    """Raised when an operation could not run at all.

    ``output`` and ``exit_code`` hold whatever the tool printed before it
    failed, when anything ran.
    """

    def __init__(
        self,
        message: str,
        stage_name: Optional[str] = None,
        exit_code: Optional[int] = None,
        output: str = "",
    ):
        super().__init__(message, stage_name=stage_name)
        self.exit_code = exit_code
        self.output = output


class ServiceUnavailable(InfrastructureError):
    """Raised when a backing service misses its readiness deadline"""

    def __init__(
        self,
        message: str,
        service_kind: Optional[str] = None,
        stage_name: Optional[str] = None,
    ):
        super().__init__(message, stage_name=stage_name)
        self.service_kind = service_kind
