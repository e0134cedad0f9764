import pytest


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> float:
        self.now += ms / 1000.0
        return self.now


@pytest.fixture
def clock():
    return FakeClock()
