"""Shared fixtures for the memory pipeline tests."""

import pytest

from brain.models import IncidentContext, IncidentResolution


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio.Redis the pipeline uses."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data = {}
        self.closed = False

    def _expire(self, key):
        entry = self.data.get(key)
        if entry is not None and entry[1] is not None and entry[1] <= self.clock():
            del self.data[key]

    async def set(self, key, value, ex=None, px=None, nx=False):
        self._expire(key)
        if nx and key in self.data:
            return None

        expires_at = None
        if px is not None:
            expires_at = self.clock() + px / 1000
        elif ex is not None:
            expires_at = self.clock() + ex
        self.data[key] = (value, expires_at)
        return True

    async def get(self, key):
        self._expire(key)
        entry = self.data.get(key)
        return entry[0] if entry else None

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def oom_incident():
    return IncidentContext(
        incident_id="INC-1",
        pod_name="checkout-7d9f",
        pod_namespace="payments",
        failure_reason="OOMKilled",
        logs="java.lang.OutOfMemoryError: Java heap space",
    )


@pytest.fixture
def oom_resolution():
    return IncidentResolution(
        incident_id="INC-1",
        cluster_id="prod-eu",
        namespace="payments",
        raw_log="oom killed",
        resolution_text="Raised memory limit to 1Gi",
    )
