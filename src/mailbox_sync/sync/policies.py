"""Composable failure policies used by the sync engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


async def retry_once_after_recovery[T, R](
    operation: Callable[[R], Awaitable[T]],
    *,
    initial: R,
    recover: Callable[[], Awaitable[R]],
    retry_on: tuple[type[BaseException], ...],
    exhausted: Callable[[BaseException], BaseException] | None = None,
) -> T:
    """Run an operation, and on a matching failure recover once and retry once.

    ``recover`` is side-effecting (e.g. a token refresh) and is never called
    more than once. Its own exceptions propagate unchanged.

    Args:
        operation: Async callable taking the current input value.
        initial: Input for the first attempt.
        recover: Async callable producing the input for the retry.
        retry_on: Exception types that trigger recovery.
        exhausted: Optional mapper applied to a matching failure of the retry.

    Returns:
        Result of the first successful attempt.

    Raises:
        BaseException: The retry's failure (mapped through ``exhausted`` when given).
    """
    try:
        return await operation(initial)
    except retry_on as exc:
        logger.info("Operation failed with %s; recovering and retrying once", type(exc).__name__)

    replacement = await recover()
    try:
        return await operation(replacement)
    except retry_on as exc:
        if exhausted is None:
            raise
        raise exhausted(exc) from exc


@dataclass(frozen=True)
class Outcome[K, T]:
    """Result of one isolated call."""

    key: K
    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        """Return whether the call succeeded."""
        return self.error is None


async def isolate_and_collect[K, T](
    keys: Iterable[K],
    fn: Callable[[K], Awaitable[T]],
    *,
    pause_s: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> list[Outcome[K, T]]:
    """Call ``fn`` for each key sequentially, capturing failures per key.

    A failure for one key never prevents later keys from running.

    Args:
        keys: Keys to process in order.
        fn: Async callable run for each key.
        pause_s: Delay inserted between consecutive keys.
        sleep: Sleep function (injectable for tests).

    Returns:
        One Outcome per key, in input order.
    """
    outcomes: list[Outcome[K, T]] = []
    for idx, key in enumerate(keys):
        if idx > 0 and pause_s > 0:
            await sleep(pause_s)
        try:
            value = await fn(key)
        except Exception as exc:
            outcomes.append(Outcome(key=key, error=exc))
            continue
        outcomes.append(Outcome(key=key, value=value))
    return outcomes
