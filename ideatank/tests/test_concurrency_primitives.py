import asyncio

import pytest

from ideatank.services.progress import ProgressTracker, estimate_progress
from ideatank.services.request_rate_limiter import (
    RequestRateLimiter,
    RequestRateLimitSettings,
)
from ideatank.services.session_events import (
    EventSource,
    SessionEvent,
    SessionEventReconciler,
)
from ideatank.utils.single_flight import SingleFlight


def test_estimate_progress_is_monotonic_and_capped():
    values = [estimate_progress(t / 2) for t in range(0, 400)]

    assert values[0] == 0
    assert all(later >= earlier for earlier, later in zip(values, values[1:]))
    assert max(values) <= 95
    assert estimate_progress(8.0) == 60
    assert estimate_progress(-1) == 0
    assert estimate_progress(5, time_constant=0) == 0


def test_progress_tracker_snaps_on_finish():
    now = [0.0]
    tracker = ProgressTracker(time_constant=8.0, clock=lambda: now[0])

    assert tracker.value() == 0
    tracker.start()
    now[0] = 8.0
    assert tracker.in_flight
    assert tracker.value() == 60

    tracker.finish()
    assert tracker.value() == 100
    assert not tracker.in_flight

    tracker.start()
    tracker.finish(succeeded=False)
    assert tracker.value() == 0


@pytest.mark.anyio("asyncio")
async def test_single_flight_shares_one_call():
    flight = SingleFlight()
    release = asyncio.Event()
    calls = []

    async def work():
        calls.append(1)
        await release.wait()
        return "done"

    first = asyncio.ensure_future(flight.run("details", work))
    second = asyncio.ensure_future(flight.run("details", work))
    await asyncio.sleep(0)
    assert flight.in_flight("details")

    release.set()
    assert await asyncio.gather(first, second) == ["done", "done"]
    assert calls == [1]
    assert not flight.in_flight("details")

    assert await flight.run("details", work) == "done"
    assert calls == [1, 1]


@pytest.mark.anyio("asyncio")
async def test_single_flight_waiter_cancellation_keeps_shared_call():
    flight = SingleFlight()
    release = asyncio.Event()

    async def work():
        await release.wait()
        return 42

    impatient = asyncio.ensure_future(flight.run("k", work))
    patient = asyncio.ensure_future(flight.run("k", work))
    await asyncio.sleep(0)
    impatient.cancel()
    release.set()

    assert await patient == 42


@pytest.mark.anyio("asyncio")
async def test_reconciler_applies_events_in_arrival_order():
    applied = []

    def handler(event: SessionEvent) -> None:
        if event.snapshot == "boom":
            raise RuntimeError("bad snapshot")
        applied.append((event.source, event.snapshot))

    reconciler = SessionEventReconciler(handler)
    reconciler.start()
    ideas = reconciler.callback_for(EventSource.IDEAS, "s1", 1)
    session = reconciler.callback_for(EventSource.SESSION, "s1", 1)

    ideas(["a"])
    session({"isActive": True})
    session("boom")
    ideas(["a", "b"])
    await reconciler.drain()

    assert applied == [
        (EventSource.IDEAS, ["a"]),
        (EventSource.SESSION, {"isActive": True}),
        (EventSource.IDEAS, ["a", "b"]),
    ]
    assert reconciler.pending == 0
    await reconciler.stop()


@pytest.mark.anyio("asyncio")
async def test_reconciler_stop_discards_queued_events():
    applied = []
    reconciler = SessionEventReconciler(applied.append)
    reconciler.start()
    await reconciler.stop()

    reconciler.publish(SessionEvent(EventSource.IDEAS, "s1", 1, []))
    await reconciler.drain()

    assert applied == []


def test_request_rate_limiter_sliding_window():
    now = [0.0]
    limiter = RequestRateLimiter(
        RequestRateLimitSettings(enabled=True, max_requests=2, window_seconds=10),
        clock=lambda: now[0],
    )

    assert limiter.hit("1.2.3.4") == (False, 0)
    now[0] = 4.0
    assert limiter.hit("1.2.3.4") == (False, 0)
    assert limiter.hit("1.2.3.4") == (True, 6)
    assert limiter.hit("5.6.7.8") == (False, 0)

    now[0] = 10.0
    assert limiter.hit("1.2.3.4") == (False, 0)

    limiter.set_settings(RequestRateLimitSettings(enabled=False, max_requests=1, window_seconds=10))
    assert limiter.hit("1.2.3.4") == (False, 0)
    assert limiter.hit("1.2.3.4") == (False, 0)


def test_request_rate_limiter_forgets_idle_callers():
    now = [0.0]
    limiter = RequestRateLimiter(
        RequestRateLimitSettings(enabled=True, max_requests=5, window_seconds=10),
        clock=lambda: now[0],
    )
    for index in range(20):
        limiter.hit(f"10.0.0.{index}")
    assert limiter.tracked_callers == 20

    now[0] = 11.0
    assert limiter.hit("10.0.1.1") == (False, 0)

    assert limiter.tracked_callers == 1
