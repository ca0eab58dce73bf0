"""Retry policy for rate-limited embedding calls."""
import logging
import time
from typing import Any, Callable

import httpx
import openai
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


def is_rate_limit_error(exc: BaseException) -> bool:
    """True for failures the provider reports as rate limiting (HTTP 429)."""
    if isinstance(exc, openai.RateLimitError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429
    return getattr(exc, "status_code", None) == 429


class RetryHandler:
    """Exponential backoff with jitter, retrying only rate-limit failures.

    Delays are base, 2*base, 4*base... plus up to max_jitter seconds of noise.
    Any other exception propagates on the first attempt.
    """

    def __init__(
        self,
        max_attempts: int = config.MAX_RETRIES,
        base_delay: float = config.RETRY_BASE_DELAY,
        max_jitter: float = config.RETRY_MAX_JITTER,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_jitter = max_jitter
        self.sleep = sleep

    def execute_with_retry(self, func: Callable, *args, **kwargs) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=60) + wait_random(0, self.max_jitter),
            retry=retry_if_exception(is_rate_limit_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self.sleep,
            reraise=True,
        )
        return retrying(func, *args, **kwargs)
