from __future__ import annotations

from dkg_publisher.services.sessions import ToolSessionRegistry


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_sessions_expire_after_idle_ttl() -> None:
    clock = FakeClock()
    registry = ToolSessionRegistry(ttl_seconds=60, clock=clock)
    session = registry.create({"agent": "test"})

    clock.now += 59
    assert registry.lookup(session.id) is session

    clock.now += 1
    assert registry.lookup(session.id) is None
    assert len(registry) == 0


def test_touch_extends_session() -> None:
    clock = FakeClock()
    registry = ToolSessionRegistry(ttl_seconds=60, clock=clock)
    session = registry.create()

    clock.now += 45
    assert registry.touch(session.id) is session
    clock.now += 45
    assert registry.lookup(session.id) is session


def test_expire_and_sweep() -> None:
    clock = FakeClock()
    registry = ToolSessionRegistry(ttl_seconds=10, clock=clock)
    first = registry.create()
    registry.create()

    assert registry.expire(first.id) is True
    assert registry.expire(first.id) is False

    clock.now += 11
    assert registry.sweep() == 1
    assert len(registry) == 0


def test_zero_ttl_never_expires() -> None:
    clock = FakeClock()
    registry = ToolSessionRegistry(ttl_seconds=0, clock=clock)
    session = registry.create()

    clock.now += 10**6
    assert registry.lookup(session.id) is session
