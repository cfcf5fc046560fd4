"""Data models for the diagnostics subsystem."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

SECRET_MASK = "********"


class ParameterKind(str, Enum):
    NUMBER = "number"
    STRING = "string"
    ENUM = "enum"
    SECRET = "secret"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.RUNNING


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    kind: ParameterKind = ParameterKind.STRING
    default: Any = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    choices: Tuple[str, ...] = ()
    required: bool = False
    integer: bool = False
    pattern: Optional[str] = None
    label: str = ""

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "label": self.label or self.name,
            "kind": self.kind.value,
            "required": self.required,
        }
        if self.kind is not ParameterKind.SECRET:
            payload["default"] = self.default
        if self.minimum is not None:
            payload["min"] = self.minimum
        if self.maximum is not None:
            payload["max"] = self.maximum
        if self.choices:
            payload["options"] = list(self.choices)
        if self.pattern:
            payload["pattern"] = self.pattern
        return payload


@dataclass(frozen=True)
class StepSpec:
    name: str
    command: str
    payload: Dict[str, Any] = field(default_factory=dict)
    expect: Optional[str] = None
    handler: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "payload": dict(self.payload),
            "expectedSubstring": self.expect,
            "responseHandler": self.handler,
        }


@dataclass(frozen=True)
class TestDefinition:
    id: str
    name: str
    category: str
    icon: str = ""
    description: str = ""
    parameters: Tuple[ParameterSpec, ...] = ()
    steps: Tuple[StepSpec, ...] = ()
    components: Tuple[str, ...] = ()
    operation: Optional[str] = None
    timeout_ms: int = 30000
    estimated_seconds: int = 5

    __test__ = False  # keep pytest from collecting this as a test class

    @property
    def is_composite(self) -> bool:
        return bool(self.components)

    @property
    def handler_name(self) -> str:
        return self.operation or self.id

    def parameter(self, name: str) -> Optional[ParameterSpec]:
        for spec in self.parameters:
            if spec.name == name:
                return spec
        return None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "icon": self.icon,
            "description": self.description,
            "parameters": [spec.to_dict() for spec in self.parameters],
            "timeoutMs": self.timeout_ms,
            "estimatedSeconds": self.estimated_seconds,
        }
        if self.steps:
            payload["steps"] = [step.to_dict() for step in self.steps]
        if self.components:
            payload["components"] = list(self.components)
        return payload


def mask_parameters(definition: TestDefinition, parameters: Dict[str, Any]) -> Dict[str, Any]:
    masked = dict(parameters)
    for spec in definition.parameters:
        if spec.kind is ParameterKind.SECRET and masked.get(spec.name):
            masked[spec.name] = SECRET_MASK
    return masked


def isoformat(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass
class RunRecord:
    run_id: str
    device_id: str
    definition: TestDefinition
    parameters: Dict[str, Any]
    start_time: float
    status: RunStatus = RunStatus.RUNNING
    progress: int = 0
    message: str = "Queued"
    end_time: Optional[float] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def test_id(self) -> str:
        return self.definition.id

    @property
    def duration(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return round(self.end_time - self.start_time, 3)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "deviceId": self.device_id,
            "testId": self.test_id,
            "name": self.definition.name,
            "parameters": mask_parameters(self.definition, self.parameters),
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "startTime": isoformat(self.start_time),
            "endTime": isoformat(self.end_time),
            "duration": self.duration,
            "result": self.result,
            "completed": self.status.terminal,
        }


@dataclass
class HistoryEntry:
    run_id: str
    test_id: str
    name: str
    result: str
    duration: float
    timestamp: float
    status: RunStatus
    details: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def from_record(cls, record: RunRecord) -> "HistoryEntry":
        passed = record.status is RunStatus.COMPLETED
        return cls(
            run_id=record.run_id,
            test_id=record.test_id,
            name=record.definition.name,
            result="pass" if passed else "fail",
            duration=record.duration or 0.0,
            timestamp=record.end_time or record.start_time,
            status=record.status,
            details=record.result,
            error=None if passed else record.message,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "testId": self.test_id,
            "name": self.name,
            "result": self.result,
            "status": self.status.value,
            "duration": self.duration,
            "timestamp": isoformat(self.timestamp),
            "details": self.details,
            "error": self.error,
        }
