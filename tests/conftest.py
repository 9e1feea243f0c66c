import pytest

from batching import BatchScheduler
from fakes import FakeClock, RecordingSleep


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(sleep):
    """Venue-sized batches with the inter-batch delay recorded, not slept."""
    return BatchScheduler(15, 0.2, sleep=sleep, name="test")
