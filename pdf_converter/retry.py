import time
from typing import Callable, TypeVar

from aws_lambda_powertools import Logger

logger = Logger(child=True)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


def with_retry(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """Run ``operation`` with exponential backoff (base, 2*base, 4*base, ...).

    Only exceptions accepted by ``retryable`` are retried; anything else, and
    the last retryable failure once attempts run out, propagates unchanged.
    """
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as exc:
            if not retryable(exc) or attempt >= max_attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.info(
                f"Retrying {description}",
                extra={"attempt": attempt + 1, "max_attempts": max_attempts, "delay": delay, "error": str(exc)},
            )
            sleep(delay)
            attempt += 1
