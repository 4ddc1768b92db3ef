"""Retry utilities with exponential backoff."""

import logging

import structlog
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.stdlib.get_logger(__name__)

# Transient failures of a session driver (LLM transport, network)
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (ConnectionError, TimeoutError)


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 2.0,
    max_wait: float = 30.0,
    exceptions: tuple = TRANSIENT_ERRORS,
):
    """Generic retry decorator.

    Args:
        max_attempts: Max retry attempts
        min_wait: Min wait between retries (seconds)
        max_wait: Max wait between retries (seconds)
        exceptions: Exception types to retry on
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def retry_from_config(config: dict | None, exceptions: tuple = TRANSIENT_ERRORS):
    """Create retry decorator from the ``retry`` section of the config dict."""
    retry_config = config or {}
    return with_retry(
        max_attempts=retry_config.get("max_attempts", 3),
        min_wait=retry_config.get("min_wait", 2.0),
        max_wait=retry_config.get("max_wait", 30.0),
        exceptions=exceptions,
    )
