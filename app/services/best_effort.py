from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class BestEffortResult(Generic[T]):
    name: str
    ok: bool
    value: T | None = None
    error: str | None = None


async def run_best_effort(
    name: str,
    awaitable: Awaitable[T],
    **log_context: object,
) -> BestEffortResult[T]:
    """Await a side effect whose failure must not reach the caller.

    Exceptions are logged and folded into the result. Cancellation is a
    BaseException and still propagates.
    """
    try:
        value = await awaitable
    except Exception as exc:
        logger.exception(
            "best_effort_call_failed",
            call=name,
            error_type=type(exc).__name__,
            **log_context,
        )
        return BestEffortResult(name=name, ok=False, error=str(exc) or type(exc).__name__)
    return BestEffortResult(name=name, ok=True, value=value)
