"""Exception hierarchy shared by the diagnostics engine and its routes."""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class DeviceLabError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(DeviceLabError):
    pass


class ParameterValidationError(DeviceLabError):
    def __init__(self, errors: List[str]) -> None:
        super().__init__("; ".join(errors) or "Invalid parameters")
        self.errors = list(errors)


class DeviceBusyError(DeviceLabError):
    pass


class DeviceUnavailableError(DeviceLabError):
    pass


class CommandTimeoutError(DeviceLabError):
    def __init__(self, command: str, timeout_ms: int) -> None:
        super().__init__(f"Command '{command}' timed out after {timeout_ms} ms")
        self.command = command
        self.timeout_ms = timeout_ms


class VerificationFailure(DeviceLabError):
    """The device answered, but not the way the test expects."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details = details


class StepFailure(VerificationFailure):
    def __init__(
        self, step: str, reason: str, details: Optional[Dict[str, Any]] = None
    ) -> None:
        super().__init__(f"Step '{step}' failed: {reason}", details)
        self.step = step


class RunStopped(DeviceLabError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} was stopped")
        self.run_id = run_id
