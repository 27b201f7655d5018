# ---------------------------------------------------------------------------- #

from __future__ import annotations

import asyncio

import pytest

from sccap.shared.workqueue import (
    BucketRateLimiter,
    ItemExponentialFailureRateLimiter,
    MaxOfRateLimiter,
    QueueShutDown,
    RateLimitingQueue,
)

# ---------------------------------------------------------------------------- #


def _queue() -> RateLimitingQueue:
    return RateLimitingQueue(
        "test",
        ItemExponentialFailureRateLimiter(base_delay=0.01, max_delay=1),
    )


class TestRateLimitingQueue:
    @pytest.mark.asyncio
    async def test_fifo_order(self) -> None:

        queue = _queue()

        for key in ["a", "b", "c"]:
            queue.add(key)

        assert [await queue.get() for _ in range(3)] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_adding_queued_key_is_deduplicated(self) -> None:

        queue = _queue()

        queue.add("a")
        queue.add("a")

        assert len(queue) == 1
        assert await queue.get() == "a"
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_key_added_while_processing_is_deferred_until_done(
        self,
    ) -> None:

        queue = _queue()

        queue.add("a")
        key = await queue.get()

        queue.add("a")
        queue.add("a")

        assert len(queue) == 0  # not handed out while being processed

        queue.done(key)

        assert len(queue) == 1
        assert await queue.get() == "a"

    @pytest.mark.asyncio
    async def test_done_without_readd_does_not_requeue(self) -> None:

        queue = _queue()

        queue.add("a")
        queue.done(await queue.get())

        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_get_blocks_until_add(self) -> None:

        queue = _queue()

        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0.01)

        assert not getter.done()

        queue.add("a")

        assert await asyncio.wait_for(getter, timeout=1) == "a"

    @pytest.mark.asyncio
    async def test_shut_down_wakes_up_getters(self) -> None:

        queue = _queue()

        getters = [asyncio.create_task(queue.get()) for _ in range(3)]
        await asyncio.sleep(0.01)

        queue.shut_down()

        for getter in getters:
            with pytest.raises(QueueShutDown):
                await asyncio.wait_for(getter, timeout=1)

    @pytest.mark.asyncio
    async def test_shut_down_abandons_queued_keys(self) -> None:

        queue = _queue()

        queue.add("a")
        queue.shut_down()
        queue.add("b")

        with pytest.raises(QueueShutDown):
            await queue.get()

    @pytest.mark.asyncio
    async def test_cancelled_getter_passes_on_wake_up(self) -> None:

        queue = _queue()

        first = asyncio.create_task(queue.get())
        second = asyncio.create_task(queue.get())
        await asyncio.sleep(0.01)

        queue.add("a")  # wakes up 'first'
        first.cancel()

        assert await asyncio.wait_for(second, timeout=1) == "a"

    @pytest.mark.asyncio
    async def test_add_after(self) -> None:

        queue = _queue()

        queue.add_after("a", 0.05)

        assert len(queue) == 0
        assert queue.is_waiting("a")

        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"
        assert not queue.is_waiting("a")

    @pytest.mark.asyncio
    async def test_add_after_keeps_earliest(self) -> None:

        queue = _queue()

        queue.add_after("a", 10)
        queue.add_after("a", 0.01)
        queue.add_after("a", 5)

        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    @pytest.mark.asyncio
    async def test_add_rate_limited_backs_off_until_forgotten(self) -> None:

        queue = _queue()

        queue.add_rate_limited("a")

        assert len(queue) == 0
        assert queue.num_requeues("a") == 1

        key = await asyncio.wait_for(queue.get(), timeout=1)
        queue.add_rate_limited(key)
        queue.done(key)

        assert queue.num_requeues("a") == 2

        key = await asyncio.wait_for(queue.get(), timeout=1)
        queue.forget(key)
        queue.done(key)

        assert queue.num_requeues("a") == 0

    @pytest.mark.asyncio
    async def test_shut_down_cancels_delayed_adds(self) -> None:

        queue = _queue()

        queue.add_after("a", 0.01)
        queue.shut_down()

        assert not queue.is_waiting("a")

        await asyncio.sleep(0.05)

        assert len(queue) == 0


# ---------------------------------------------------------------------------- #


class TestRateLimiters:
    def test_item_exponential(self) -> None:

        limiter = ItemExponentialFailureRateLimiter(base_delay=1, max_delay=10)

        assert [limiter.when("a") for _ in range(6)] == [1, 2, 4, 8, 10, 10]
        assert limiter.when("b") == 1
        assert limiter.num_requeues("a") == 6

        limiter.forget("a")

        assert limiter.when("a") == 1

    def test_item_exponential_long_failures(self) -> None:

        limiter = ItemExponentialFailureRateLimiter(base_delay=1, max_delay=10)

        for _ in range(1000):
            delay = limiter.when("a")

        assert delay == 10

    def test_bucket(self) -> None:

        now = 0.0
        limiter = BucketRateLimiter(qps=10, burst=2, clock=lambda: now)

        assert limiter.when("a") == 0
        assert limiter.when("b") == 0
        assert limiter.when("c") == pytest.approx(0.1)
        assert limiter.when("d") == pytest.approx(0.2)

        now = 10.0  # bucket refills, but never above burst

        assert limiter.when("a") == 0
        assert limiter.when("a") == 0
        assert limiter.when("a") == pytest.approx(0.1)

    def test_max_of(self) -> None:

        now = 0.0

        limiter = MaxOfRateLimiter(
            ItemExponentialFailureRateLimiter(base_delay=0.01, max_delay=100),
            BucketRateLimiter(qps=1, burst=1, clock=lambda: now),
        )

        assert limiter.when("a") == pytest.approx(0.01)
        assert limiter.when("a") == pytest.approx(1)
        assert limiter.num_requeues("a") == 2

        limiter.forget("a")

        assert limiter.num_requeues("a") == 0


# ---------------------------------------------------------------------------- #
