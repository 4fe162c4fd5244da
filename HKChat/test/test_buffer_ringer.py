"""
Tests for the ICE candidate buffer and the ringer.
"""

import asyncio

import pytest

from HKChat.core.client.call import IceCandidateBuffer, Ringer


class TestIceCandidateBuffer:
    @pytest.mark.asyncio
    async def test_flush_in_arrival_order(self):
        buffer = IceCandidateBuffer()
        for c in ("a", "b", "c"):
            buffer.push(c)
        applied = []

        async def apply(candidate):
            applied.append(candidate)

        assert await buffer.flush(apply) == 3
        assert applied == ["a", "b", "c"]
        assert len(buffer) == 0

    @pytest.mark.asyncio
    async def test_pushes_during_flush_are_included(self):
        buffer = IceCandidateBuffer()
        buffer.push("a")
        applied = []

        async def apply(candidate):
            applied.append(candidate)
            if candidate == "a":
                buffer.push("late")
            await asyncio.sleep(0)

        await buffer.flush(apply)
        assert applied == ["a", "late"]

    @pytest.mark.asyncio
    async def test_failures_are_skipped(self):
        buffer = IceCandidateBuffer()
        buffer.push("bad")
        buffer.push("good")
        applied = []

        async def apply(candidate):
            if candidate == "bad":
                raise ValueError(candidate)
            applied.append(candidate)

        assert await buffer.flush(apply) == 1
        assert applied == ["good"]

    def test_clear_and_snapshot(self):
        buffer = IceCandidateBuffer()
        buffer.push("a")
        assert buffer.snapshot() == ["a"]
        buffer.clear()
        assert buffer.snapshot() == []


class TestRinger:
    @pytest.mark.asyncio
    async def test_rings_until_stopped(self):
        rings = []
        ringer = Ringer(lambda: rings.append(1), interval=0.02)
        ringer.start()
        ringer.start()
        await asyncio.sleep(0.07)
        ringer.stop()
        count = len(rings)

        assert ringer.is_running is False
        assert 2 <= count <= 5
        await asyncio.sleep(0.05)
        assert len(rings) == count

    @pytest.mark.asyncio
    async def test_async_callback_and_errors(self):
        calls = []

        async def ring():
            calls.append(1)
            raise RuntimeError("speaker gone")

        ringer = Ringer(ring, interval=0.01)
        ringer.start()
        await asyncio.sleep(0.035)
        ringer.stop()
        assert len(calls) >= 2
