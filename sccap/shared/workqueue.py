# ---------------------------------------------------------------------------- #

from __future__ import annotations

import asyncio
from asyncio import CancelledError, Future, TimerHandle
from collections import deque
from collections.abc import Callable, Hashable
from time import monotonic
from typing import Optional, Protocol

from sccap.shared.config import (
    RATE_LIMITER_BASE_DELAY,
    RATE_LIMITER_BURST,
    RATE_LIMITER_MAX_DELAY,
    RATE_LIMITER_QPS,
)

# ---------------------------------------------------------------------------- #


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float:
        """Return how long, in seconds, the item should wait before being
        processed again. Counts as a failure of the item."""

    def forget(self, item: Hashable) -> None:
        ...

    def num_requeues(self, item: Hashable) -> int:
        ...


class ItemExponentialFailureRateLimiter:
    """Delay doubles with every failure of an item, starting at 'base_delay'
    and never exceeding 'max_delay'."""

    base_delay: float
    max_delay: float

    def __init__(self, base_delay: float, max_delay: float) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:

        exp = self._failures.get(item, 0)
        self._failures[item] = exp + 1

        # avoid overflowing the float for items that fail for a long time
        if exp >= 64:
            return self.max_delay

        return min(self.base_delay * 2**exp, self.max_delay)

    def forget(self, item: Hashable) -> None:
        self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        return self._failures.get(item, 0)


class BucketRateLimiter:
    """Token bucket shared by all items. Only bounds the overall retry rate;
    does not track items."""

    qps: float
    burst: int

    def __init__(
        self,
        qps: float,
        burst: int,
        *,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()

    def when(self, item: Hashable) -> float:

        now = self._clock()

        self._tokens = min(
            float(self.burst), self._tokens + (now - self._last) * self.qps
        )
        self._last = now

        # reserve a token, possibly going into debt

        self._tokens -= 1

        return max(0.0, -self._tokens / self.qps)

    def forget(self, item: Hashable) -> None:
        pass

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Waits as long as the most restrictive of the given limiters."""

    def __init__(self, *limiters: RateLimiter) -> None:
        self._limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self._limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self._limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self._limiters)


def default_controller_rate_limiter() -> RateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(
            base_delay=RATE_LIMITER_BASE_DELAY.total_seconds(),
            max_delay=RATE_LIMITER_MAX_DELAY.total_seconds(),
        ),
        BucketRateLimiter(qps=RATE_LIMITER_QPS, burst=RATE_LIMITER_BURST),
    )


# ---------------------------------------------------------------------------- #


class QueueShutDown(Exception):
    pass


class RateLimitingQueue:
    """
    Work queue with the following properties:

    - Items are processed in FIFO order.
    - An item added while it is already queued is not queued again.
    - An item added while it is being processed (between `get()` and `done()`)
      is queued again only once `done()` is called, so that no item is ever
      processed concurrently with itself.
    - Items can be added after a delay, or after a delay chosen by a rate
      limiter based on how many times they have failed.

    Must only be used from the thread running the event loop.
    """

    name: str

    def __init__(
        self, name: str, rate_limiter: Optional[RateLimiter] = None
    ) -> None:

        self.name = name
        self._rate_limiter = rate_limiter or default_controller_rate_limiter()

        self._queue: deque[Hashable] = deque()

        # items that need processing; a subset of these is in '_queue', the
        # rest is in '_processing'
        self._dirty: set[Hashable] = set()

        self._processing: set[Hashable] = set()

        # items waiting to be added --> (ready time, timer)
        self._waiting: dict[Hashable, tuple[float, TimerHandle]] = {}

        self._getters: deque[Future[None]] = deque()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    def add(self, item: Hashable) -> None:

        if self._shutting_down or item in self._dirty:
            return

        self._dirty.add(item)

        if item in self._processing:
            return  # will be queued again by done()

        self._queue.append(item)
        self._wake_up_next_getter()

    def add_after(self, item: Hashable, delay: float) -> None:

        if self._shutting_down:
            return

        if delay <= 0:
            self.add(item)
            return

        loop = asyncio.get_running_loop()
        ready_time = loop.time() + delay

        # keep the earliest of several pending delayed adds

        waiting = self._waiting.get(item)

        if waiting is not None:
            if waiting[0] <= ready_time:
                return
            waiting[1].cancel()

        handle = loop.call_at(ready_time, self._add_waiting, item)
        self._waiting[item] = (ready_time, handle)

    def _add_waiting(self, item: Hashable) -> None:
        del self._waiting[item]
        self.add(item)

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self._rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self._rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self._rate_limiter.num_requeues(item)

    def is_waiting(self, item: Hashable) -> bool:
        """Whether the item has a pending delayed add."""
        return item in self._waiting

    async def get(self) -> Hashable:
        """Block until an item is available and return it. Every item returned
        must eventually be passed to `done()`. Raises `QueueShutDown` once the
        queue is shut down; items still queued are then abandoned."""

        while not self._queue and not self._shutting_down:

            getter = asyncio.get_running_loop().create_future()
            self._getters.append(getter)

            try:
                await getter
            except CancelledError:

                getter.cancel()

                try:
                    self._getters.remove(getter)
                except ValueError:
                    pass  # already woken up

                # pass on the wake-up we may have consumed
                if self._queue and not getter.cancelled():
                    self._wake_up_next_getter()

                raise

        if self._shutting_down:
            raise QueueShutDown

        item = self._queue.popleft()

        self._processing.add(item)
        self._dirty.discard(item)

        return item

    def done(self, item: Hashable) -> None:

        self._processing.discard(item)

        if item in self._dirty and not self._shutting_down:
            self._queue.append(item)
            self._wake_up_next_getter()

    def shut_down(self) -> None:

        self._shutting_down = True

        for _, handle in self._waiting.values():
            handle.cancel()

        self._waiting.clear()

        while self._getters:
            getter = self._getters.popleft()
            if not getter.done():
                getter.set_result(None)

    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def _wake_up_next_getter(self) -> None:
        while self._getters:
            getter = self._getters.popleft()
            if not getter.done():
                getter.set_result(None)
                break


# ---------------------------------------------------------------------------- #
