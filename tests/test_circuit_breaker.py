import asyncio

import pytest

from app.circuit_breaker import CallTimeoutError, CircuitBreaker, CircuitState, Fallback
from conftest import FakeClock


async def ok():
    return "ok"


async def boom():
    raise RuntimeError("boom")


async def trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await breaker.execute(boom)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker(
        "products-service",
        timeout=1.0,
        error_threshold_percentage=50,
        reset_timeout=30,
        rolling_window=10,
        volume_threshold=3,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_closed_breaker_runs_operation(breaker):
    assert await breaker.execute(ok) == "ok"

    stats = breaker.stats()
    assert stats["state"] == "closed"
    assert stats["requests"] == 1
    assert stats["successes"] == 1
    assert stats["failures"] == 0


@pytest.mark.asyncio
async def test_execute_passes_arguments(breaker):
    async def add(a, b, *, c=0):
        return a + b + c

    assert await breaker.execute(add, 1, 2, c=3) == 6


@pytest.mark.asyncio
async def test_opens_at_volume_and_error_threshold(breaker):
    await trip(breaker, 2)
    assert breaker.state is CircuitState.CLOSED

    await trip(breaker, 1)
    assert breaker.state is CircuitState.OPEN


@pytest.mark.asyncio
async def test_stays_closed_below_error_threshold(breaker):
    for _ in range(3):
        await breaker.execute(ok)
    await trip(breaker, 1)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.stats()["error_rate"] == 25.0


@pytest.mark.asyncio
async def test_old_outcomes_leave_the_rolling_window(breaker, clock):
    await trip(breaker, 2)
    clock.advance(11)
    await trip(breaker, 1)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.stats()["window_requests"] == 1


@pytest.mark.asyncio
async def test_open_breaker_never_calls_operation(breaker):
    await trip(breaker, 3)
    calls = 0

    async def counted():
        nonlocal calls
        calls += 1
        return "ok"

    for _ in range(5):
        result = await breaker.execute(counted)
        assert isinstance(result, Fallback)
        assert result.breaker == "products-service"

    assert calls == 0
    stats = breaker.stats()
    assert stats["fallbacks"] == 5
    assert stats["requests"] == 8
    assert stats["is_open"] is True


@pytest.mark.asyncio
async def test_first_call_after_cooldown_runs_half_open(breaker, clock):
    await trip(breaker, 3)
    clock.advance(30)
    seen = []

    async def probe():
        seen.append(breaker.state)
        return "ok"

    assert await breaker.execute(probe) == "ok"
    assert seen == [CircuitState.HALF_OPEN]


@pytest.mark.asyncio
async def test_half_open_success_closes_and_clears_window(breaker, clock):
    await trip(breaker, 3)
    clock.advance(30)

    await breaker.execute(ok)

    stats = breaker.stats()
    assert stats["state"] == "closed"
    assert stats["window_requests"] == 0
    # ウィンドウが空なので、再び volume_threshold 件の失敗が必要
    await trip(breaker, 2)
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_failure_reopens_and_restarts_cooldown(breaker, clock):
    await trip(breaker, 3)
    clock.advance(30)

    await trip(breaker, 1)
    assert breaker.state is CircuitState.OPEN

    clock.advance(29)
    assert isinstance(await breaker.execute(ok), Fallback)
    clock.advance(1)
    assert breaker.state is CircuitState.HALF_OPEN


@pytest.mark.asyncio
async def test_half_open_allows_a_single_trial(breaker, clock):
    await trip(breaker, 3)
    clock.advance(30)
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "ok"

    trial = asyncio.create_task(breaker.execute(slow))
    await asyncio.sleep(0)
    concurrent = await breaker.execute(ok)
    release.set()

    assert isinstance(concurrent, Fallback)
    assert await trial == "ok"
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_timeout_is_counted_as_failure():
    breaker = CircuitBreaker("slow-service", timeout=0.05, volume_threshold=1)

    async def hang():
        await asyncio.sleep(5)

    with pytest.raises(CallTimeoutError):
        await breaker.execute(hang)

    stats = breaker.stats()
    assert stats["timeouts"] == 1
    assert stats["failures"] == 1
    assert stats["state"] == "open"


@pytest.mark.asyncio
async def test_excluded_errors_count_as_success(clock):
    breaker = CircuitBreaker(
        "cart-service",
        volume_threshold=1,
        is_failure=lambda exc: not isinstance(exc, ValueError),
        clock=clock,
    )

    async def rejected():
        raise ValueError("business rejection")

    for _ in range(3):
        with pytest.raises(ValueError):
            await breaker.execute(rejected)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.stats()["successes"] == 3


@pytest.mark.asyncio
async def test_custom_fallback(clock):
    breaker = CircuitBreaker(
        "notifications-service",
        volume_threshold=1,
        fallback=lambda: {"success": False, "fallback": True},
        clock=clock,
    )
    await trip(breaker, 1)

    assert await breaker.execute(ok) == {"success": False, "fallback": True}
