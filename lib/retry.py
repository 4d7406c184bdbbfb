import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

import requests
from twilio.base.exceptions import TwilioRestException

logger = logging.getLogger(__name__)

T = TypeVar('T')

RETRYABLE_STATUS = {408, 429}


def is_retryable(error: Exception) -> bool:
    """Transient provider failures worth another try"""
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    if isinstance(error, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return True

    status = getattr(error, 'status', None) or getattr(error, 'status_code', None)
    if status is None and isinstance(error, requests.exceptions.HTTPError) and error.response is not None:
        status = error.response.status_code
    if isinstance(status, int) and (status in RETRYABLE_STATUS or 500 <= status < 600):
        return True

    # Twilio 20xxx codes are rate limits and API-side faults
    if isinstance(error, TwilioRestException) and error.code and 20000 <= int(error.code) < 21000:
        return True

    return False


def backoff_delay(attempt: int, initial: float = 1.0, factor: float = 2.0,
                  max_delay: float = 30.0, jitter: bool = True) -> float:
    delay = min(initial * factor ** (attempt - 1), max_delay)
    if jitter:
        delay *= 0.5 + random.random()
    return delay


async def retry_async(func: Callable[[], Awaitable[T]], max_retries: int = 3, initial_delay: float = 1.0,
                      factor: float = 2.0, max_delay: float = 30.0, jitter: bool = True,
                      sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> T:
    """Await `func()` and retry transient failures with exponential backoff"""
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as e:
            retryable = is_retryable(e)
            if attempt > max_retries or not retryable:
                logger.error(f"Giving up after attempt {attempt}: {str(e)} (retryable={retryable})")
                raise
            delay = backoff_delay(attempt, initial_delay, factor, max_delay, jitter)
            logger.warning(f"Attempt {attempt} failed: {str(e)}; retrying in {delay:.2f}s")
            await sleep(delay)
            attempt += 1
