import pytest
from unittest.mock import AsyncMock

import requests
from twilio.base.exceptions import TwilioRestException

from lib.retry import backoff_delay, is_retryable, retry_async


class StatusError(Exception):
    def __init__(self, status):
        super().__init__(f"status {status}")
        self.status = status


def test_retryable_errors():
    assert is_retryable(ConnectionError('reset'))
    assert is_retryable(TimeoutError())
    assert is_retryable(requests.exceptions.Timeout())
    assert is_retryable(StatusError(503))
    assert is_retryable(StatusError(429))
    assert is_retryable(TwilioRestException(500, 'https://api.twilio.com', code=20429))


def test_permanent_errors():
    assert not is_retryable(ValueError('bad'))
    assert not is_retryable(StatusError(400))
    assert not is_retryable(TwilioRestException(400, 'https://api.twilio.com', code=21211))


def test_backoff_without_jitter():
    assert backoff_delay(1, jitter=False) == 1.0
    assert backoff_delay(3, jitter=False) == 4.0
    assert backoff_delay(10, jitter=False) == 30.0


async def test_retries_transient_then_succeeds():
    func = AsyncMock(side_effect=[ConnectionError('reset'), StatusError(502), 'done'])
    sleep = AsyncMock()
    assert await retry_async(func, sleep=sleep, jitter=False) == 'done'
    assert func.await_count == 3
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]


async def test_gives_up_after_max_retries():
    func = AsyncMock(side_effect=ConnectionError('down'))
    with pytest.raises(ConnectionError):
        await retry_async(func, max_retries=2, sleep=AsyncMock())
    assert func.await_count == 3


async def test_does_not_retry_permanent_errors():
    func = AsyncMock(side_effect=ValueError('bad input'))
    sleep = AsyncMock()
    with pytest.raises(ValueError):
        await retry_async(func, sleep=sleep)
    func.assert_awaited_once()
    sleep.assert_not_awaited()
