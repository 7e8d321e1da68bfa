"""Retry helpers for cleanup calls.

Storage operations themselves are not retried; callers decide. Cleanup
calls that would otherwise leave billable state behind (aborting a
multipart upload) opt in via ``with_retry``.

Implementation: Uses tenacity internally.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

import tenacity
from tenacity.wait import wait_base

__all__ = ["with_retry"]

F = TypeVar("F", bound=Callable[..., Any])


def with_retry(
    max_attempts: int = 3,
    backoff_seconds: float = 0.2,
    exponential: bool = True,
    retry_exceptions: Optional[Tuple[Type[BaseException], ...]] = None,
) -> Callable[[F], F]:
    """Retry decorator for flaky operations.

    Args:
        max_attempts: Maximum number of attempts (default 3)
        backoff_seconds: Base delay between attempts
        exponential: Use exponential backoff (default True)
        retry_exceptions: Only retry on these exceptions (default: all)

    The last exception is re-raised once attempts are exhausted.
    """
    wait_strategy: wait_base
    if exponential:
        wait_strategy = tenacity.wait_exponential(multiplier=backoff_seconds, min=backoff_seconds)
    else:
        wait_strategy = tenacity.wait_fixed(backoff_seconds)

    retry_condition = tenacity.retry_if_exception_type(retry_exceptions or (Exception,))

    def decorator(fn: F) -> F:
        fn_logger = logging.getLogger(fn.__module__)

        def before_sleep_handler(retry_state: tenacity.RetryCallState) -> None:
            exception = retry_state.outcome.exception() if retry_state.outcome else None
            fn_logger.warning(
                "%s attempt %d/%d failed: %s. Retrying in %.1fs...",
                fn.__name__,
                retry_state.attempt_number,
                max_attempts,
                exception,
                retry_state.next_action.sleep if retry_state.next_action else 0,
            )

        retrying = tenacity.retry(
            stop=tenacity.stop_after_attempt(max_attempts),
            wait=wait_strategy,
            retry=retry_condition,
            before_sleep=before_sleep_handler,
            reraise=True,
        )(fn)

        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return retrying(*args, **kwargs)

        return wrapper  # type: ignore

    return decorator
