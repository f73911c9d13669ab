"""Bounded retry with exponential backoff for upstream model calls."""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import get_settings
from .errors import UpstreamUnavailableError, is_transient_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    label: str = "llm_call",
    max_retries: Optional[int] = None,
    initial_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
) -> T:
    """
    Run ``operation`` and retry it on transient upstream errors.

    Delays double from ``initial_delay`` up to ``max_delay``. Non-transient
    errors propagate immediately. When retries run out the last error is
    wrapped in ``UpstreamUnavailableError``.

    Args:
        operation: Zero-argument coroutine factory
        label: Name used in log messages
        max_retries: Retries after the first attempt (default from settings)
        initial_delay: First backoff delay in seconds
        max_delay: Backoff ceiling in seconds

    Returns:
        Whatever ``operation`` returns
    """
    settings = get_settings()
    retries = settings.LLM_RETRY_MAX_RETRIES if max_retries is None else max_retries
    first = settings.LLM_RETRY_INITIAL_DELAY if initial_delay is None else initial_delay
    ceiling = settings.LLM_RETRY_MAX_DELAY if max_delay is None else max_delay

    retrying = AsyncRetrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=first, min=first, max=ceiling),
        retry=retry_if_exception(is_transient_error),
        before_sleep=lambda retry_state: logger.warning(
            f"[{label}] attempt {retry_state.attempt_number} failed "
            f"({retry_state.outcome.exception()}), retrying in "
            f"{retry_state.next_action.sleep:.1f}s"
        ),
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                return await operation()
    except Exception as e:
        if is_transient_error(e):
            logger.error(f"[{label}] giving up after {retries} retries: {e}")
            raise UpstreamUnavailableError(f"{label} failed: {e}") from e
        raise

    raise UpstreamUnavailableError(f"{label} produced no result")
