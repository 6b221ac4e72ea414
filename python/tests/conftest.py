"""
Shared fixtures for the batch screening test suite.
"""

import asyncio
import sys
from pathlib import Path
from typing import List

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from batch.rate_limiter import RateLimiter
from batch.types import EntityRecord, EntityType
from config_manager import BatchConfig, ConfigManager


class FakeClock:
    """Manual clock; sleeping advances time instantly."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def limiter(fake_clock):
    """Rate limiter on a fake clock with no pacing delay."""
    return RateLimiter(
        max_requests=5,
        window_ms=1000,
        inter_request_delay_ms=0,
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )


@pytest.fixture
def batch_config():
    return BatchConfig(inter_entity_delay_ms=0)


@pytest.fixture
def records():
    return [
        EntityRecord(name="Acme Corporation", country="USA", type=EntityType.COMPANY),
        EntityRecord(name="Globex Holdings", address="1 Harbour Rd, Dubai"),
        EntityRecord(name="John Doe", type=EntityType.PERSON, identifier="PASSPORT123"),
    ]


@pytest.fixture(autouse=True)
def reset_config_singleton():
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()
