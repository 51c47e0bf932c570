from __future__ import annotations

import asyncio

import pytest

from tenantry.singleflight import SingleFlight


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_call() -> None:
    flights: SingleFlight[str, int] = SingleFlight()
    calls = 0
    release = asyncio.Event()

    async def work() -> int:
        nonlocal calls
        calls += 1
        await release.wait()
        return 42

    waiters = [asyncio.create_task(flights.do("alice", work)) for _ in range(5)]
    await asyncio.sleep(0)
    assert flights.inflight("alice")
    release.set()
    results = await asyncio.gather(*waiters)

    assert results == [42] * 5
    assert calls == 1
    assert not flights.inflight("alice")
    assert len(flights) == 0


@pytest.mark.asyncio
async def test_distinct_keys_run_independently() -> None:
    flights: SingleFlight[str, str] = SingleFlight()
    seen: list[str] = []

    def factory(key: str):
        async def work() -> str:
            seen.append(key)
            await asyncio.sleep(0)
            return key

        return work

    results = await asyncio.gather(flights.do("a", factory("a")), flights.do("b", factory("b")))
    assert results == ["a", "b"]
    assert sorted(seen) == ["a", "b"]


@pytest.mark.asyncio
async def test_failure_is_shared_then_cleared_for_retry() -> None:
    flights: SingleFlight[str, int] = SingleFlight()
    attempts = 0

    async def flaky() -> int:
        nonlocal attempts
        attempts += 1
        await asyncio.sleep(0)
        if attempts == 1:
            raise RuntimeError("first attempt fails")
        return attempts

    results = await asyncio.gather(flights.do("k", flaky), flights.do("k", flaky), return_exceptions=True)
    assert all(isinstance(result, RuntimeError) for result in results)
    assert attempts == 1
    assert not flights.inflight("k")

    assert await flights.do("k", flaky) == 2


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_call() -> None:
    flights: SingleFlight[str, str] = SingleFlight()
    release = asyncio.Event()

    async def work() -> str:
        await release.wait()
        return "done"

    first = asyncio.create_task(flights.do("k", work))
    second = asyncio.create_task(flights.do("k", work))
    await asyncio.sleep(0)
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first
    release.set()
    assert await second == "done"


@pytest.mark.asyncio
async def test_each_event_loop_gets_its_own_flight() -> None:
    flights: SingleFlight[str, str] = SingleFlight()
    release = asyncio.Event()

    async def held_here() -> str:
        await release.wait()
        return "main loop"

    async def run_elsewhere() -> str:
        return "worker loop"

    pending = asyncio.create_task(flights.do("k", held_here))
    await asyncio.sleep(0)
    assert flights.inflight("k")

    elsewhere = await asyncio.to_thread(asyncio.run, flights.do("k", run_elsewhere))

    assert elsewhere == "worker loop"
    assert len(flights) == 1
    release.set()
    assert await pending == "main loop"
    assert len(flights) == 0
