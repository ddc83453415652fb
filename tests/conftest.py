import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from fakes import FakeNetwork  # noqa: E402

from peerchat.config import Config  # noqa: E402
from peerchat.network.signaling import InMemorySignalingStore  # noqa: E402


@pytest.fixture
def store():
    return InMemorySignalingStore()


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def fast_config():
    """Short timers so lifecycle tests finish quickly."""
    return Config(typing_timeout=0.05, disconnect_grace=0.1, ice_servers=())


async def wait_until(predicate, timeout=2.0, interval=0.005):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def until():
    return wait_until
