"""Tests for the command sequencer."""

import asyncio

import pytest
from blukey_link.sequencer import CommandSequencer


class TestOrdering:
    """Commands run one at a time in FIFO order."""

    @pytest.mark.parametrize("delays", [(0.02, 0.0), (0.0, 0.02), (0.01, 0.01), (0.0, 0.0)])
    def test_second_waits_for_first(self, delays) -> None:
        events = []

        async def scenario():
            sequencer = CommandSequencer()

            def unit(name: str, delay: float):
                async def work():
                    events.append(f"{name}:begin")
                    await asyncio.sleep(delay)
                    events.append(f"{name}:end")
                    return name
                return work

            first = sequencer.submit("first", unit("first", delays[0]))
            second = sequencer.submit("second", unit("second", delays[1]))
            return await asyncio.gather(first, second), sequencer

        results, sequencer = asyncio.run(scenario())
        assert results == ["first", "second"]
        assert events == ["first:begin", "first:end", "second:begin", "second:end"]
        assert not sequencer.running

    def test_failure_does_not_block_queue(self) -> None:
        async def scenario():
            sequencer = CommandSequencer()

            async def boom():
                raise RuntimeError("boom")

            async def fine():
                return 42

            failed = sequencer.submit("boom", boom)
            ok = await sequencer.run("fine", fine)
            with pytest.raises(RuntimeError):
                await failed
            return ok

        assert asyncio.run(scenario()) == 42

    def test_current_and_pending(self) -> None:
        async def scenario():
            sequencer = CommandSequencer()
            gate = asyncio.Event()

            async def blocked():
                await gate.wait()

            sequencer.submit("a", blocked)
            second = sequencer.submit("b", blocked)
            await asyncio.sleep(0)
            snapshot = (sequencer.current, sequencer.pending)
            gate.set()
            await second
            return snapshot

        assert asyncio.run(scenario()) == ("a", 1)


class TestCancellation:
    """cancel_all() drops everything synchronously."""

    def test_cancel_running_and_queued(self) -> None:
        started = []

        async def scenario():
            sequencer = CommandSequencer()

            async def slow():
                started.append("slow")
                await asyncio.sleep(10)

            async def never():
                started.append("never")

            running = sequencer.submit("slow", slow)
            queued = sequencer.submit("never", never)
            await asyncio.sleep(0)
            sequencer.cancel_all()
            assert not sequencer.running
            assert sequencer.pending == 0

            await asyncio.sleep(0.01)
            return running, queued, sequencer

        running, queued, sequencer = asyncio.run(scenario())
        assert running.cancelled()
        assert queued.cancelled()
        assert started == ["slow"]
        assert sequencer.current is None

    def test_cancel_before_first_step(self) -> None:
        async def scenario():
            sequencer = CommandSequencer()

            async def work():
                return "ran"

            future = sequencer.submit("work", work)
            sequencer.cancel_all()
            await asyncio.sleep(0.01)
            return future

        assert asyncio.run(scenario()).cancelled()

    def test_usable_after_cancel(self) -> None:
        async def scenario():
            sequencer = CommandSequencer()

            async def slow():
                await asyncio.sleep(10)

            async def quick():
                return "ok"

            sequencer.submit("slow", slow)
            await asyncio.sleep(0)
            sequencer.cancel_all()
            return await sequencer.run("quick", quick)

        assert asyncio.run(scenario()) == "ok"
