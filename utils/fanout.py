"""
Concurrent fan-out with typed result aggregation.

Every handler that starts several independent sub-operations for one event
hands them to ``run_all`` under stable names, waits for all of them to
settle, and then decides what a failure means for the event as a whole.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass, field
from typing import Any, Awaitable

from core.errors import SubOperationError

logger = structlog.get_logger()


@dataclass
class FanOutResult:
    ok: bool
    errors: dict[str, BaseException] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=dict)

    def raise_for_errors(self, context: str) -> None:
        if not self.ok:
            raise SubOperationError(context, self.errors)


async def run_all(tasks: dict[str, Awaitable[Any]]) -> FanOutResult:
    """Run named awaitables concurrently; never raises for task failures."""
    if not tasks:
        return FanOutResult(ok=True)

    names = list(tasks)
    outcomes = await asyncio.gather(*(tasks[n] for n in names), return_exceptions=True)

    errors: dict[str, BaseException] = {}
    results: dict[str, Any] = {}
    for name, outcome in zip(names, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            logger.error("fanout_task_failed", task=name, error=str(outcome),
                         error_type=type(outcome).__name__)
            errors[name] = outcome
        else:
            results[name] = outcome
    return FanOutResult(ok=not errors, errors=errors, results=results)
