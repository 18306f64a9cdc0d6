"""
API Retry Utility with Exponential Backoff

Retry mechanism for external API calls, tuned for the OpenAI completion
endpoint used by the answer generator.

Features:
- Exponential backoff (1s, 2s, 4s, ...) with optional jitter
- Retries only on rate limits (HTTP 429), server errors (5xx) and
  transient network failures; everything else fails on the first attempt
- Injectable sleep so callers and tests control the waiting
"""

import random
import socket
import time
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Type, Tuple, Any, FrozenSet

import httpx
import openai

from dailylearn.errors import ErrorKind

# Configure logging
logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    # Total attempts, including the first call
    max_attempts: int = 3

    # Backoff timing (in seconds)
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0

    # Random factor 0-jitter_factor x of delay; 0 keeps delays deterministic
    jitter_factor: float = 0.0

    # Specific error handling
    retry_on_status_codes: Tuple[int, ...] = (429,)
    retry_on_server_errors: bool = True
    retry_on_exceptions: Tuple[Type[BaseException], ...] = (
        ConnectionError,
        TimeoutError,
        socket.gaierror,
        httpx.TransportError,
        openai.APIConnectionError,
    )
    retry_on_error_codes: FrozenSet[str] = frozenset(
        {"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "EAI_AGAIN"}
    )


# Answer generation: 3 attempts, waits of 1s then 2s
ANSWER_GENERATION_RETRY = RetryConfig()


# ============================================================================
# CLASSIFICATION
# ============================================================================

def get_status_code(exception: BaseException) -> Optional[int]:
    """Extract an HTTP status code from SDK or httpx errors, if any."""
    for attr in ("status_code", "status"):
        value = getattr(exception, attr, None)
        if isinstance(value, int):
            return value

    response = getattr(exception, "response", None)
    status_code = getattr(response, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    return None


def is_retryable_error(exception: BaseException, config: RetryConfig = ANSWER_GENERATION_RETRY) -> bool:
    """
    Determine whether an error is transient and worth retrying.

    Retries on rate limiting (429), server errors (5xx) and network/timeout
    failures (connection reset, timeout, DNS failure).
    """
    status_code = get_status_code(exception)
    if status_code is not None:
        if status_code in config.retry_on_status_codes:
            return True
        if config.retry_on_server_errors and status_code >= 500:
            return True
        return False

    if isinstance(exception, config.retry_on_exceptions):
        return True

    code = getattr(exception, "code", None)
    if isinstance(code, str) and code in config.retry_on_error_codes:
        return True

    return False


def classify_external_error(exception: BaseException) -> ErrorKind:
    """Map a raw external failure onto the transient/permanent error kinds."""
    if is_retryable_error(exception):
        return ErrorKind.TRANSIENT_EXTERNAL
    return ErrorKind.PERMANENT_EXTERNAL


# ============================================================================
# BACKOFF
# ============================================================================

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Delay before the next attempt, after ``attempt`` (1-indexed) has failed.

    attempt 1 failed -> initial_delay, attempt 2 failed -> initial_delay * base, ...
    """
    base_delay = config.initial_delay * (config.exponential_base ** (attempt - 1))

    jitter = 0.0
    if config.jitter_factor > 0:
        jitter = random.uniform(0, config.jitter_factor * base_delay)

    return min(base_delay + jitter, config.max_delay)


def call_with_retry(
    func: Callable[[], Any],
    config: RetryConfig = ANSWER_GENERATION_RETRY,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    description: str = "API call",
) -> Any:
    """
    Call ``func`` until it succeeds, a non-retryable error occurs, or the
    attempts run out. The last error is re-raised.

    Args:
        func: Zero-argument callable performing the external call
        config: Retry configuration
        sleep: Function used to wait between attempts
        on_retry: Callback(attempt, exception, delay) called before each wait
        description: Label used in log messages
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func()
        except Exception as e:
            last_exception = e
            retryable = is_retryable_error(e, config)

            logger.warning(
                f"{description} failed (attempt {attempt}/{config.max_attempts}, "
                f"retryable={retryable}, status={get_status_code(e)}): {e}"
            )

            if not retryable or attempt >= config.max_attempts:
                break

            delay = calculate_delay(attempt, config)
            if on_retry:
                on_retry(attempt, e, delay)

            logger.info(f"Retrying {description} in {delay:.2f}s...")
            sleep(delay)

    logger.error(f"{description} failed after {attempt} attempt(s): {last_exception}")
    raise last_exception
