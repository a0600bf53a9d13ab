import asyncio
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from deradar.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    label: str = "operation",
    **log_context,
) -> T:
    """
    Call ``func`` until it succeeds or ``attempts`` calls have failed.

    Implements exponential backoff: waits base_delay, 2x, 4x ... between
    attempts, capped at max_backoff. Only exceptions in ``retry_on`` are
    retried; anything else propagates immediately.

    Args:
        func: Zero-argument coroutine factory
        attempts: Total number of calls (not retries)
        base_delay: Wait before the second attempt, in seconds
        max_backoff: Upper bound on a single wait
        retry_on: Exception types considered transient
        sleep: Sleep coroutine (asyncio.sleep by default)
        label: Name used in log lines
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    sleep = sleep or asyncio.sleep

    attempt = 1
    while True:
        try:
            return await func()
        except retry_on as e:
            if attempt >= attempts:
                logger.warning(
                    f"Max attempts ({attempts}) exhausted for {label}",
                    error=str(e) or type(e).__name__,
                    **log_context,
                )
                raise

            backoff = min(base_delay * (2 ** (attempt - 1)), max_backoff)
            logger.info(
                f"Transient error in {label}, retrying ({attempt}/{attempts})",
                error=str(e) or type(e).__name__,
                wait=f"{backoff:.2f}s",
                **log_context,
            )
            await sleep(backoff)
            attempt += 1
