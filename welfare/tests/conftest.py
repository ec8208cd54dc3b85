from datetime import datetime, timedelta, timezone

import pytest

from welfare.service import InMemoryStorage, WelfareStore


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now += timedelta(minutes=minutes)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    return WelfareStore(storage=InMemoryStorage(seed=True), clock=clock, voucher_ttl_minutes=15)
