"""Tests for Observable subscriptions and streams."""
import asyncio

import pytest

from chatsync.observers import Observable


class TestSubscribe:
    """Tests for synchronous callbacks."""

    def test_publish_reaches_subscribers(self):
        seen = []
        obs = Observable("test")
        obs.subscribe(seen.append)
        obs.publish(1)
        obs.publish(2)
        assert seen == [1, 2]

    def test_cancel_detaches(self):
        seen = []
        obs = Observable("test")
        handle = obs.subscribe(seen.append)
        handle.cancel()
        handle.cancel()
        obs.publish(1)
        assert seen == []
        assert len(obs) == 0

    def test_context_manager_cancels(self):
        obs = Observable("test")
        with obs.subscribe(lambda value: None):
            assert len(obs) == 1
        assert len(obs) == 0

    def test_callback_error_isolated(self):
        seen = []
        obs = Observable("test")

        def broken(value):
            raise RuntimeError("observer bug")

        obs.subscribe(broken)
        obs.subscribe(seen.append)
        obs.publish("x")
        assert seen == ["x"]

    def test_cancel_during_publish(self):
        """An observer may cancel another one mid-publish."""
        seen = []
        obs = Observable("test")
        second = None

        def first(value):
            second.cancel()

        obs.subscribe(first)
        second = obs.subscribe(seen.append)
        obs.publish(1)
        assert seen == []


class TestStream:
    """Tests for bounded async streams."""

    @pytest.mark.asyncio
    async def test_stream_delivers_in_order(self):
        obs = Observable("test")
        stream = obs.stream(maxsize=10)
        for i in range(3):
            obs.publish(i)
        assert [await stream.__anext__() for _ in range(3)] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_full_stream_drops_oldest(self):
        obs = Observable("test")
        stream = obs.stream(maxsize=2)
        for i in range(5):
            obs.publish(i)
        assert stream.dropped == 3
        assert stream.queue.get_nowait() == 3
        assert stream.queue.get_nowait() == 4

    @pytest.mark.asyncio
    async def test_cancel_ends_iteration(self):
        obs = Observable("test")
        stream = obs.stream()
        received = []

        async def consume():
            async for item in stream:
                received.append(item)

        task = asyncio.get_running_loop().create_task(consume())
        obs.publish("a")
        await asyncio.sleep(0)
        stream.cancel()
        await asyncio.wait_for(task, timeout=1.0)
        assert received == ["a"]
