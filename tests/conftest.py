"""Shared fixtures for the security layer tests."""

import pytest
from loguru import logger

from security.input_validator import InputValidator
from security.rate_limiter import RateLimiter
from security.storage import MemoryKeyValueStore


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(store=store, clock=clock, storage_key="test_rate_limits")


@pytest.fixture
def validator():
    return InputValidator()


@pytest.fixture
def log_records():
    """Collect loguru records emitted during the test."""
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)
