from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List

from devicelab.diagnostics.catalog import TestCatalog
from devicelab.diagnostics.context import RunContext
from devicelab.diagnostics.executor import StepExecutor
from devicelab.errors import RunStopped, VerificationFailure
from devicelab.services.logging_service import logging_service

SubProgressReporter = Callable[[str, int, str], Awaitable[None]]

FULL_SYSTEM_TIERS = (10, 20, 30, 45, 60, 75, 90)

_logger = logging_service.get_logger(__name__)


def progress_tiers(count: int) -> List[int]:
    """Progress reached after each component finishes."""
    if count == len(FULL_SYSTEM_TIERS):
        return list(FULL_SYSTEM_TIERS)
    if count <= 1:
        return [90] * count
    return [round(10 + index * 80 / (count - 1)) for index in range(count)]


class CompositeComposer:
    """Runs the components of a composite test one after another.

    A failing component is recorded and the next one still runs; only a stop
    request ends the sequence early.
    """

    def __init__(self, catalog: TestCatalog, executor: StepExecutor) -> None:
        self.catalog = catalog
        self.executor = executor

    async def run(self, ctx: RunContext, report_sub: SubProgressReporter) -> Dict[str, Any]:
        components = ctx.definition.components
        tiers = progress_tiers(len(components))
        results: Dict[str, Dict[str, Any]] = {}
        await ctx.progress(5, f"Starting {ctx.definition.name}")

        for index, test_id in enumerate(components):
            sub_run_id = f"{ctx.run_id}_{test_id}"
            ctx.checkpoint()
            _logger.info("Run %s: component %s (%s)", ctx.run_id, test_id, sub_run_id)
            results[test_id] = await self._run_component(ctx, test_id, sub_run_id, report_sub)
            verdict = "passed" if results[test_id]["success"] else "failed"
            await ctx.progress(
                tiers[index], f"{test_id} {verdict} ({index + 1}/{len(components)})"
            )

        passed = sum(1 for outcome in results.values() if outcome["success"])
        summary = {
            "total": len(results),
            "passed": passed,
            "failed": len(results) - passed,
            "success": passed == len(results),
        }
        result = {"components": results, "summary": summary, "success": summary["success"]}
        if not summary["success"]:
            raise VerificationFailure(
                f"{summary['failed']} of {summary['total']} components failed", details=result
            )
        return result

    async def _run_component(
        self, ctx: RunContext, test_id: str, sub_run_id: str, report_sub: SubProgressReporter
    ) -> Dict[str, Any]:
        async def report(percent: int, message: str) -> None:
            await report_sub(sub_run_id, percent, message)

        try:
            definition = self.catalog.get(test_id)
            parameters = self.catalog.validate(test_id, {})
            sub_ctx = ctx.derive(sub_run_id, definition, parameters, report)
            outcome = dict(await self.executor.execute(sub_ctx))
        except RunStopped:
            raise
        except VerificationFailure as exc:
            outcome = {"success": False, "error": exc.message}
            if exc.details:
                outcome["details"] = exc.details
        except Exception as exc:
            _logger.warning("Component %s of run %s failed: %s", test_id, ctx.run_id, exc)
            outcome = {"success": False, "error": str(exc) or exc.__class__.__name__}
        outcome["success"] = bool(outcome.get("success"))
        outcome["runId"] = sub_run_id
        return outcome
