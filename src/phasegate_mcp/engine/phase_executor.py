"""Phase executor contract.

A phase executor is an opaque callable doing a phase's actual work:

    def executor(definition: PhaseDefinition, context: dict[str, Any]) -> Any

It may be a plain function or a coroutine function. It signals failure by
raising a descriptive exception (never by returning a sentinel), so the
recovery manager can classify the error. Plain functions run in the default
thread pool to keep the event loop free while they block.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from .models import PhaseDefinition

PhaseExecutor = Callable[[PhaseDefinition, dict[str, Any]], Any]

PhaseRunner = Callable[[PhaseExecutor, PhaseDefinition, dict[str, Any]], Awaitable[Any]]
"""Wraps executor invocation (e.g. ErrorRecoveryManager.run_protected)."""


async def invoke_executor(
    executor: PhaseExecutor,
    definition: PhaseDefinition,
    context: dict[str, Any],
    timeout: float | None = None,
) -> Any:
    """Call a sync or async executor, optionally bounded by a timeout.

    Raises:
        TimeoutError: The executor did not finish within timeout seconds
        Exception: Whatever the executor raised
    """
    if inspect.iscoroutinefunction(executor):
        call: Awaitable[Any] = executor(definition, context)
    else:
        loop = asyncio.get_running_loop()
        call = loop.run_in_executor(None, functools.partial(executor, definition, context))

    if timeout is None:
        result = await call
    else:
        result = await asyncio.wait_for(call, timeout=timeout)

    # Callables returning an awaitable (e.g. partials of async functions)
    if inspect.isawaitable(result):
        result = await result
    return result


__all__ = ["PhaseExecutor", "PhaseRunner", "invoke_executor"]
