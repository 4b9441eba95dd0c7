"""Helpers for invoking caller-supplied callbacks.

Callbacks may be plain functions or coroutine functions.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable

__all__ = ["call_maybe_async", "invoke_safely"]

logger = logging.getLogger(__name__)


async def call_maybe_async(callback: Callable[..., Any], *args: Any) -> Any:
    """Call ``callback`` and await the result if it is awaitable.

    Exceptions propagate to the caller.
    """
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def invoke_safely(
    callback: Callable[..., Any] | None,
    *args: Any,
    description: str = "callback",
) -> None:
    """Call ``callback`` and log, rather than raise, any Exception.

    Used for per-handle callbacks so that a failing callback cannot take
    down the supervisor or other handles.
    """
    if callback is None:
        return
    try:
        await call_maybe_async(callback, *args)
    except Exception as e:
        logger.warning(f"Error in {description}: {type(e).__name__}: {e}")
