# buildloop/llm/retry.py
"""Retry logic for model API calls with exponential backoff."""

import logging

import anthropic
import httpx
import openai
from ollama import ResponseError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504, 529}


def is_retryable(exception: BaseException) -> bool:
    """
    Returns True if the exception should be retried.

    Retryable conditions:
    - Connection failures and timeouts of any client library
    - HTTP status in RETRYABLE_STATUSES (rate limits, overload, gateway errors)
      BUT NOT Ollama's 500 "requires more system memory" (retrying won't help)
    """
    if isinstance(
        exception,
        (
            ConnectionError,
            httpx.TransportError,
            openai.APIConnectionError,
            anthropic.APIConnectionError,
        ),
    ):
        return True

    if isinstance(exception, ResponseError):
        if exception.status_code not in RETRYABLE_STATUSES:
            return False
        if exception.status_code == 500 and "requires more system memory" in str(exception).lower():
            return False
        return True

    if isinstance(exception, (openai.APIStatusError, anthropic.APIStatusError)):
        return exception.status_code in RETRYABLE_STATUSES

    return False


# Tenacity retry decorator for provider calls; the original exception
# propagates once attempts are exhausted.
model_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=4, max=60),
    retry=retry_if_exception(is_retryable),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
