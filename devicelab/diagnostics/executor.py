from __future__ import annotations

from typing import Any, Dict, List, Mapping

from devicelab.config import EngineSettings
from devicelab.diagnostics.context import RunContext
from devicelab.diagnostics.models import StepSpec, TestDefinition
from devicelab.diagnostics.operations import ALLOWANCES, OPERATIONS, Allowance, Operation, get_operation
from devicelab.diagnostics.parsers import get_parser
from devicelab.errors import DeviceUnavailableError, StepFailure, VerificationFailure
from devicelab.services.command_channel import CommandResponse
from devicelab.services.logging_service import logging_service

_logger = logging_service.get_logger(__name__)


class StepExecutor:
    """Runs a single non-composite test against the device.

    Step-sequence tests stop at the first failing step. Operation tests are
    delegated to the registered operation for the test id.
    """

    def __init__(
        self,
        operations: Dict[str, Operation] = OPERATIONS,
        allowances: Mapping[str, Allowance] = ALLOWANCES,
    ) -> None:
        self.operations = operations
        self.allowances = allowances

    async def execute(self, ctx: RunContext) -> Dict[str, Any]:
        definition = ctx.definition
        if not ctx.channel.is_available(ctx.device_id):
            raise DeviceUnavailableError(f"Device {ctx.device_id} is not reachable")
        if definition.steps:
            return await self._run_steps(ctx, definition)
        return await self._run_operation(ctx, definition)

    def allowance_ms(
        self, definition: TestDefinition, parameters: Dict[str, Any], settings: EngineSettings
    ) -> float:
        """Longest a healthy device may need for *definition* with *parameters*."""
        if definition.steps:
            return definition.timeout_ms * len(definition.steps)
        estimate = self.allowances.get(definition.handler_name)
        if estimate is None:
            return definition.timeout_ms
        return max(definition.timeout_ms, estimate(definition, parameters, settings))

    async def _run_steps(self, ctx: RunContext, definition: TestDefinition) -> Dict[str, Any]:
        total = len(definition.steps)
        executed: List[Dict[str, Any]] = []
        for index, step in enumerate(definition.steps):
            await ctx.progress(10 + index * 80 / total, f"Running step {index + 1}/{total}: {step.name}")
            response = await ctx.send(step.command, step.payload, definition.timeout_ms)
            entry = {"name": step.name, "command": step.command, "response": response.text}
            passed, reason, extracted = self._check(step, response)
            entry["passed"] = passed
            if extracted:
                entry["data"] = extracted
            executed.append(entry)
            _logger.debug("Run %s step %s passed=%s", ctx.run_id, step.name, passed)
            if not passed:
                entry["error"] = reason
                raise StepFailure(step.name, reason, details={"steps": executed, "success": False})
        return {"steps": executed, "passed": len(executed), "success": True}

    @staticmethod
    def _check(step: StepSpec, response: CommandResponse):
        if not response.success:
            return False, response.message or "device reported an error", None
        text = response.text
        if step.expect is not None:
            if step.expect in text:
                return True, "", None
            return False, f"expected '{step.expect}' in reply", None
        if step.handler:
            try:
                return True, "", get_parser(step.handler)(text)
            except ValueError as exc:
                return False, str(exc), None
        return True, "", None

    async def _run_operation(self, ctx: RunContext, definition: TestDefinition) -> Dict[str, Any]:
        name = definition.handler_name
        handler = self.operations.get(name) or get_operation(name)
        result = await handler(ctx)
        if not result.get("success"):
            raise VerificationFailure(
                result.get("error") or f"{definition.name} verification failed", details=result
            )
        return result
