import asyncio
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from common.logger import get_logger

T = TypeVar("T")

_logger = get_logger(__name__)


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay to wait after the given (1-based) failed attempt."""
    return base_delay * 2 ** (attempt - 1)


async def retry_with_backoff(
        fn: Callable[[], Awaitable[T]],
        max_attempts: int = 3,
        base_delay: float = 1.0,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        label: str = "operation",
) -> Tuple[T, int]:
    """Run ``fn`` until it succeeds or ``max_attempts`` is reached.

    Returns the result together with the number of attempts made. When every
    attempt fails the last error is re-raised as is. Errors outside
    ``retry_on`` are not retried.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 1
    while True:
        try:
            return await fn(), attempt
        except retry_on as exc:
            if attempt >= max_attempts:
                _logger.error(
                    "%s failed after %d attempt(s): %s", label, attempt, exc
                )
                raise

            delay = backoff_delay(base_delay, attempt)
            _logger.warning(
                "%s attempt %d/%d failed, retrying in %.2fs: %s",
                label, attempt, max_attempts, delay, exc,
            )
            await sleep(delay)
            attempt += 1
