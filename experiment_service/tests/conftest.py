import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from experiment_service.fake_runtime import FakeRuntime
from experiment_service.manager import ExperimentManager
from experiment_service.settings import IPROUTE2_IMAGE, K6_IMAGE, PUMBA_IMAGE

ALL_IMAGES = (K6_IMAGE, PUMBA_IMAGE, IPROUTE2_IMAGE)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def runtime():
    return FakeRuntime(images=ALL_IMAGES)


@pytest_asyncio.fixture
async def manager(runtime, clock):
    mgr = ExperimentManager(runtime, clock=clock, drain_timeout=0.05)
    try:
        yield mgr
    finally:
        # Ensure monitor tasks don't leak between tests (pytest-asyncio strict mode).
        pending = [t for t in mgr.supervisor._tasks.values() if not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
