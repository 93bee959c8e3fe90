"""
Bounded retry helpers for Kubernetes API calls.

Only transient failures are retried (timeouts, dropped connections, 5xx and
429 answers). Compare-and-swap conflicts (409) and missing objects (404)
carry meaning for the caller and are raised on the first attempt.
"""
import asyncio
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from kubernetes_asyncio.client import ApiException

from dbha.config.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def is_retryable_k8s_error(exception: BaseException) -> bool:
    """Whether ``exception`` is a transient API failure worth another attempt."""
    if isinstance(exception, ApiException):
        return exception.status in RETRYABLE_STATUS_CODES
    return isinstance(exception, (asyncio.TimeoutError, ConnectionError))


def backoff_delay(
    attempt: int,
    initial_delay: float,
    max_delay: float,
    exponential_base: float = 2.0,
) -> float:
    """Delay before retry number ``attempt`` (0-based), capped at ``max_delay``."""
    return min(initial_delay * (exponential_base ** attempt), max_delay)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 5.0,
    exponential_base: float = 2.0,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
    **kwargs,
) -> T:
    """
    Await ``func(*args, **kwargs)``, retrying transient failures with backoff.

    Args:
        func: Coroutine function performing one API call
        max_retries: Attempts after the first one
        initial_delay: Delay before the first retry in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Growth factor between delays
        retry_on: Extra exception types treated as transient

    Example:
        record = await retry_async(
            core_api.read_namespaced_config_map,
            name="mycluster-postgresql-leader",
            namespace="default",
            max_retries=2,
        )
    """
    name = getattr(func, "__name__", "k8s_call")
    attempt = 0
    while True:
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            transient = is_retryable_k8s_error(e) or bool(retry_on and isinstance(e, retry_on))
            if not transient:
                raise
            if attempt >= max_retries:
                logger.error(
                    "k8s_call_gave_up",
                    function=name,
                    attempts=attempt + 1,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

            delay = backoff_delay(attempt, initial_delay, max_delay, exponential_base)
            logger.warning(
                "k8s_call_retrying",
                function=name,
                attempt=attempt + 1,
                delay_seconds=delay,
                status_code=getattr(e, "status", None),
                error_type=type(e).__name__,
            )
            await asyncio.sleep(delay)
            attempt += 1
            continue

        if attempt:
            logger.info("k8s_call_recovered", function=name, attempts=attempt + 1)
        return result

