"""Unit tests for ConnectionRegistry."""

from __future__ import annotations

import asyncio

import pytest

from bidding_service.services.connection_registry import HEARTBEAT_CLOSE_CODE, ConnectionRegistry
from tests.helpers import FakeHandle


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock: FakeClock) -> ConnectionRegistry:
    return ConnectionRegistry(heartbeat_timeout_seconds=60, clock=clock)


@pytest.mark.unit
async def test_register_multiple_handles_per_user(registry) -> None:
    tab_one = FakeHandle()
    tab_two = FakeHandle()
    await registry.register("u-a", tab_one)
    await registry.register("u-a", tab_two)
    await registry.register("u-b", FakeHandle())

    assert await registry.handles_for("u-a") == frozenset({tab_one, tab_two})
    assert await registry.connection_count() == 3
    assert await registry.user_count() == 2


@pytest.mark.unit
async def test_unregister_drops_empty_user(registry) -> None:
    handle = FakeHandle()
    await registry.register("u-a", handle)

    assert await registry.unregister("u-a", handle) is True
    assert await registry.unregister("u-a", handle) is False
    assert await registry.handles_for("u-a") == frozenset()
    assert await registry.user_count() == 0


@pytest.mark.unit
async def test_handles_for_returns_snapshot(registry) -> None:
    handle = FakeHandle()
    await registry.register("u-a", handle)

    snapshot = await registry.handles_for("u-a")
    await registry.unregister("u-a", handle)

    assert handle in snapshot


@pytest.mark.unit
async def test_sweep_pings_fresh_handles(registry, clock) -> None:
    handle = FakeHandle()
    await registry.register("u-a", handle)
    clock.now += 30

    assert await registry.sweep() == 0
    assert handle.sent == [{"type": "ping"}]
    assert handle.close_codes == []


@pytest.mark.unit
async def test_sweep_evicts_silent_handle(registry, clock) -> None:
    silent = FakeHandle()
    chatty = FakeHandle()
    await registry.register("u-a", silent)
    await registry.register("u-a", chatty)

    clock.now += 45
    await registry.touch(chatty)
    clock.now += 30

    assert await registry.sweep() == 1
    assert silent.close_codes == [HEARTBEAT_CLOSE_CODE]
    assert silent.sent == []
    assert await registry.handles_for("u-a") == frozenset({chatty})


@pytest.mark.unit
async def test_sweep_evicts_handle_whose_ping_fails(registry) -> None:
    broken = FakeHandle(fail=True)
    await registry.register("u-a", broken)

    assert await registry.sweep() == 1
    assert broken.close_codes == [HEARTBEAT_CLOSE_CODE]
    assert await registry.connection_count() == 0


@pytest.mark.unit
async def test_sweep_evicts_closed_handle(registry) -> None:
    handle = FakeHandle()
    handle.closed.set()
    await registry.register("u-a", handle)

    assert await registry.sweep() == 1
    assert await registry.user_count() == 0


@pytest.mark.unit
async def test_run_heartbeat_stops_on_cancel(registry) -> None:
    handle = FakeHandle()
    await registry.register("u-a", handle)

    task = asyncio.create_task(registry.run_heartbeat(0.01))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert {"type": "ping"} in handle.sent


@pytest.mark.unit
async def test_close_all(registry) -> None:
    first = FakeHandle()
    second = FakeHandle(fail=True)
    await registry.register("u-a", first)
    await registry.register("u-b", second)

    await registry.close_all()

    assert first.close_codes == [1001]
    assert second.close_codes == [1001]
    assert await registry.connection_count() == 0


@pytest.mark.unit
async def test_sweep_is_not_blocked_by_hanging_handle(clock) -> None:
    registry = ConnectionRegistry(
        heartbeat_timeout_seconds=60, ping_timeout_seconds=0.05, clock=clock
    )
    hanging = FakeHandle(hang=True)
    broken = FakeHandle(fail=True)
    healthy = FakeHandle()
    await registry.register("u-a", hanging)
    await registry.register("u-b", broken)
    await registry.register("u-c", healthy)

    evicted = await asyncio.wait_for(registry.sweep(), timeout=2)

    assert evicted == 2
    assert hanging.close_codes == [HEARTBEAT_CLOSE_CODE]
    assert broken.close_codes == [HEARTBEAT_CLOSE_CODE]
    assert healthy.sent == [{"type": "ping"}]
    assert await registry.handles_for("u-c") == frozenset({healthy})
    assert await registry.connection_count() == 1
