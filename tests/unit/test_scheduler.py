"""
Tests for poolforge.core.scheduler module.
"""

import asyncio

from poolforge.core.errors import SessionError
from poolforge.core.scheduler import Scheduler


class TestScheduler:
    """Tests for Scheduler and PeriodicTask."""

    def test_runs_periodically(self) -> None:
        calls: list[int] = []

        async def tick() -> None:
            calls.append(1)

        async def run() -> None:
            scheduler = Scheduler()
            handle = scheduler.every("tick", 0.001, tick)
            await asyncio.sleep(0.05)
            scheduler.cancel_all()
            await asyncio.sleep(0)
            assert handle.cancelled

        asyncio.run(run())
        assert len(calls) >= 2

    def test_initial_delay(self) -> None:
        calls: list[int] = []

        async def tick() -> None:
            calls.append(1)

        async def run() -> None:
            scheduler = Scheduler()
            scheduler.every("tick", 10, tick, initial_delay=10)
            await asyncio.sleep(0.02)
            scheduler.cancel_all()

        asyncio.run(run())
        assert calls == []

    def test_errors_do_not_stop_the_timer(self) -> None:
        calls: list[int] = []

        async def flaky() -> None:
            calls.append(1)
            raise RuntimeError("backend hiccup")

        async def run() -> None:
            scheduler = Scheduler()
            handle = scheduler.every("flaky", 0.001, flaky)
            await asyncio.sleep(0.05)
            assert not handle.cancelled
            scheduler.cancel_all()

        asyncio.run(run())
        assert len(calls) >= 2

    def test_session_error_cancels_every_timer(self) -> None:
        errors: list[SessionError] = []
        other_calls: list[int] = []

        async def expired() -> None:
            raise SessionError("CSRF token expired")

        async def other() -> None:
            other_calls.append(1)

        async def run() -> None:
            scheduler = Scheduler()
            scheduler.add_session_error_callback(errors.append)
            stats = scheduler.every("stats", 0.001, other, initial_delay=0.01)
            ip = scheduler.every("public-ip", 0.001, other, initial_delay=0.01)
            detection = scheduler.every("detection", 0.001, expired)
            await asyncio.sleep(0.05)

            assert stats.cancelled and ip.cancelled and detection.cancelled
            assert scheduler.active == []
            assert scheduler.get("stats") is None

        asyncio.run(run())
        assert len(errors) == 1
        assert errors[0].reason == "CSRF token expired"
        assert other_calls == []

    def test_reregistering_replaces_timer(self) -> None:
        async def tick() -> None:
            pass

        async def run() -> None:
            scheduler = Scheduler()
            first = scheduler.every("tick", 1, tick)
            second = scheduler.every("tick", 1, tick)
            await asyncio.sleep(0)
            assert first.cancelled
            assert not second.cancelled
            assert scheduler.get("tick") is second
            scheduler.cancel("tick")
            await asyncio.sleep(0)
            assert second.cancelled

        asyncio.run(run())

    def test_cancel_is_idempotent(self) -> None:
        async def tick() -> None:
            pass

        async def run() -> None:
            scheduler = Scheduler()
            handle = scheduler.every("tick", 1, tick)
            handle.cancel()
            handle.cancel()
            scheduler.cancel_all()
            await asyncio.sleep(0)
            assert handle.cancelled

        asyncio.run(run())
