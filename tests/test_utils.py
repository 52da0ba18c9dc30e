import logging

import pytest
from unittest.mock import AsyncMock, patch

from omnichat.utils.logger import mask_secret
from omnichat.utils.retry import backoff_delay, sleep_backoff


def test_backoff_grows_and_caps():
    assert backoff_delay(0, jitter=False) == 0.5
    assert backoff_delay(2, jitter=False) == 2.0
    assert backoff_delay(10, jitter=False) == 8.0
    assert backoff_delay(3, initial_delay=0) == 0.0


def test_backoff_jitter_stays_in_range():
    for _ in range(50):
        assert 0.25 <= backoff_delay(0) <= 0.75


@pytest.mark.asyncio
async def test_sleep_backoff_skips_zero_delay():
    with patch("omnichat.utils.retry.asyncio.sleep", new=AsyncMock()) as sleep:
        assert await sleep_backoff(1, initial_delay=0) == 0.0
        sleep.assert_not_awaited()
        delay = await sleep_backoff(1, initial_delay=1.0, jitter=False)
        sleep.assert_awaited_once_with(delay)
    assert delay == 2.0


def test_mask_secret():
    assert mask_secret("") == "<empty>"
    assert mask_secret("short") == "****"
    assert mask_secret("AIzaSyExampleKey1234") == "AIza...1234"


def test_console_handler_installed_alongside_stream_subclasses():
    handlers = logging.getLogger().handlers
    assert any(type(h) is logging.StreamHandler for h in handlers)
