"""Bounded-time wrappers for remote calls.

Mail and calendar collaborators are synchronous (requests-based), so the
blocking call is pushed to a worker thread and awaited with a deadline.
A timed-out call raises OperationTimeoutError; the worker thread is left
to finish on its own and its result is discarded.

Usage:
    from concierge.core.timeout import with_timeout

    message = await with_timeout("getMessage msg-1", mail.get_message, "msg-1")
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from concierge.core.errors import OperationTimeoutError
from concierge.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0

T = TypeVar("T")


async def with_timeout(
    label: str,
    func: Callable[..., T | Awaitable[T]],
    *args: Any,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    **kwargs: Any,
) -> T:
    """Run ``func(*args, **kwargs)`` with a deadline.

    Coroutine functions are awaited directly; plain callables run in a
    thread via asyncio.to_thread.

    Args:
        label: Short description used in logs and the error message
        func: Callable to invoke
        timeout: Deadline in seconds

    Returns:
        Whatever the callable returns

    Raises:
        OperationTimeoutError: If the deadline passes first
    """
    if inspect.iscoroutinefunction(func):
        awaitable = func(*args, **kwargs)
    else:
        awaitable = asyncio.to_thread(func, *args, **kwargs)

    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as e:
        logger.warning("remote_call_timeout", label=label, timeout_seconds=timeout)
        raise OperationTimeoutError(label, timeout) from e
