"""Concurrent execution of independent Propstack calls.

Every call settles on its own; a failure is recorded, never raised, so the
result always has one outcome per call. Whether the composite operation can
go on is decided by the caller through ``FanOutResult.essential_failure``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from .clients.propstack import PropstackClient
from .models import ErrorKind, FanOutCall, FanOutResult, Failure, Outcome, PaginatedCollection, Success
from .pagination import paginate

logger = logging.getLogger(__name__)


async def _run_call(client: PropstackClient, call: FanOutCall) -> Outcome:
    if call.page_size is None:
        return await client.execute(call.request)

    result = await paginate(client, call.request, page_size=call.page_size, max_items=call.max_items)
    if isinstance(result, PaginatedCollection):
        return Success(payload=result.items, total_count=result.total_count, truncated=result.truncated)
    return result


async def fan_out(client: PropstackClient, calls: Iterable[FanOutCall]) -> FanOutResult:
    """Issue all calls at once and wait for every one of them to settle."""
    calls = list(calls)
    names = [c.name for c in calls]
    if len(set(names)) != len(names):
        raise ValueError(f"Fan-out call names must be unique: {names}")
    essential = [c.name for c in calls if c.essential]
    if len(essential) > 1:
        raise ValueError(f"At most one fan-out call may be essential, got {essential}")

    results = await asyncio.gather(*(_run_call(client, c) for c in calls), return_exceptions=True)

    outcomes: dict[str, Outcome] = {}
    for call, result in zip(calls, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.error("Fan-out call %s raised unexpectedly: %s", call.name, result, exc_info=result)
            result = Failure(kind=ErrorKind.UNKNOWN, detail=repr(result), path=call.request.path)
        elif isinstance(result, Failure):
            logger.warning("Fan-out call %s failed: %s", call.name, result.kind.value)
        outcomes[call.name] = result

    return FanOutResult(outcomes=outcomes, essential=essential[0] if essential else None)
