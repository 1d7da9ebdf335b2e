"""
Bounded pool of channels multiplexed over one broker connection.

The pool hands out channels exclusively: between `acquire()` and `release()`
a channel belongs to one caller. When the pool is exhausted, `acquire()`
suspends until a release hands a channel over (FIFO) or frees a slot.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable

from brokerkit.core.exceptions import ChannelError, ChannelPoolError, PoolClosedError
from brokerkit.services.channel import Channel

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[], Awaitable[Channel]]


class ChannelPool:
    """
    Channel pool with min/max sizing and idle eviction.

    Args:
        factory: Coroutine function creating a new, opened channel.
        min_size: Channels created on first demand and kept through eviction.
        max_size: Upper bound of available + checked-out + being-created channels.
        idle_timeout: Seconds a channel may stay unused before it is closed.
        evict_interval: Seconds between eviction runs. Defaults to `idle_timeout`.
    """

    def __init__(
        self,
        factory: ChannelFactory,
        *,
        min_size: int = 5,
        max_size: int = 10,
        idle_timeout: float = 30.0,
        evict_interval: float | None = None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        if not 0 <= min_size <= max_size:
            raise ValueError("min_size must be between 0 and max_size")
        if idle_timeout <= 0:
            raise ValueError("idle_timeout must be > 0")
        self._factory = factory
        self._min_size = min_size
        self._max_size = max_size
        self._idle_timeout = idle_timeout
        self._evict_interval = evict_interval or idle_timeout

        # (channel, released_at) pairs; the right end is the most recently released.
        self._available: deque[tuple[Channel, float]] = deque()
        self._in_use: set[Channel] = set()
        self._pending = 0
        self._waiters: deque[asyncio.Future[Channel | None]] = deque()
        self._started = False
        self._closed = False
        self._reaper: asyncio.Task[None] | None = None

    @property
    def size(self) -> int:
        return len(self._available) + len(self._in_use) + self._pending

    @property
    def available(self) -> int:
        return len(self._available)

    @property
    def in_use(self) -> int:
        return len(self._in_use)

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self) -> Channel:
        """
        Check a channel out of the pool.

        Raises:
            PoolClosedError: If the pool is closed, or gets closed while waiting.
            ChannelError: If a new channel cannot be created.
        """
        if not self._started:
            await self._start()

        while True:
            self._ensure_open()

            channel = await self._take_available()
            if channel is not None:
                return channel

            if self.size < self._max_size:
                channel = await self._create()
                if self._closed:
                    await self._close_quietly(channel)
                    raise PoolClosedError("Channel pool is closed")
                self._in_use.add(channel)
                return channel

            waiter: asyncio.Future[Channel | None] = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            logger.debug("Channel pool exhausted (%d), waiting", self._max_size)
            try:
                channel = await waiter
            except asyncio.CancelledError:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                elif waiter.done() and not waiter.cancelled() and waiter.result() is not None:
                    # Handed a channel just before cancellation; give it back.
                    await self.release(waiter.result())
                raise
            if channel is not None:
                return channel

    async def release(self, channel: Channel, *, discard: bool = False) -> None:
        """
        Return a checked-out channel.

        The channel is closed instead of being reused when `discard` is set,
        when it is closed or broken, when it has been idle longer than the idle
        timeout, or when the pool is closed.

        Raises:
            ChannelPoolError: If the channel is not checked out from this pool.
        """
        if channel not in self._in_use:
            raise ChannelPoolError(f"{channel!r} is not checked out from this pool")
        self._in_use.remove(channel)

        reusable = not (
            discard
            or self._closed
            or channel.is_closed
            or channel.broken
            or self._is_expired(channel.last_used)
        )
        if not reusable:
            await self._close_quietly(channel)
            self._wake(None)
            return

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._in_use.add(channel)
                waiter.set_result(channel)
                return
        self._available.append((channel, time.monotonic()))

    async def evict_idle(self) -> int:
        """
        Close available channels idle longer than the idle timeout.

        The pool never shrinks below `min_size` through eviction.

        Returns:
            Number of channels closed.
        """
        expired: list[Channel] = []
        # Oldest first: the left end holds the longest-idle channels.
        while self._available and self.size > self._min_size:
            channel, released_at = self._available[0]
            if not (channel.is_closed or self._is_expired(released_at)):
                break
            self._available.popleft()
            expired.append(channel)
        for channel in expired:
            await self._close_quietly(channel)
        if expired:
            logger.debug("Evicted %d idle channel(s)", len(expired))
            for _ in expired:
                self._wake(None)
        return len(expired)

    async def close(self) -> None:
        """Close the pool and every available channel.

        Checked-out channels are closed when released.
        """
        if self._closed:
            return
        available = self._shutdown()
        if self._reaper is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reaper
            self._reaper = None
        for channel in available:
            await self._close_quietly(channel)
        logger.debug("Channel pool closed")

    def abandon(self) -> None:
        """Close the pool without I/O, after its connection was lost."""
        if self._closed:
            return
        for channel in self._shutdown():
            channel.invalidate()
        for channel in self._in_use:
            channel.invalidate()
        self._reaper = None

    def _shutdown(self) -> list[Channel]:
        self._closed = True
        if self._reaper is not None:
            self._reaper.cancel()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolClosedError("Channel pool is closed"))
        available = [channel for channel, _ in self._available]
        self._available.clear()
        return available

    async def _start(self) -> None:
        self._started = True
        self._reaper = asyncio.create_task(self._reap(), name="brokerkit-channel-reaper")
        while self.size < self._min_size and not self._closed:
            channel = await self._create()
            if self._closed:
                await self._close_quietly(channel)
                break
            self._available.append((channel, time.monotonic()))

    async def _create(self) -> Channel:
        self._pending += 1
        try:
            channel = await self._factory()
        except BaseException:
            self._pending -= 1
            self._wake(None)
            raise
        self._pending -= 1
        logger.debug("Created pooled channel (size=%d)", self.size + 1)
        return channel

    async def _reap(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._evict_interval)
            await self.evict_idle()

    async def _take_available(self) -> Channel | None:
        while self._available:
            channel, released_at = self._available.pop()
            if channel.is_closed or channel.broken:
                continue
            if self._is_expired(released_at) and self.size >= self._min_size:
                await self._close_quietly(channel)
                continue
            self._in_use.add(channel)
            return channel
        return None

    def _wake(self, value: Channel | None) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(value)
                return

    def _is_expired(self, since: float) -> bool:
        return time.monotonic() - since > self._idle_timeout

    def _ensure_open(self) -> None:
        if self._closed:
            raise PoolClosedError("Channel pool is closed")

    async def _close_quietly(self, channel: Channel) -> None:
        try:
            await channel.close()
        except ChannelError:
            logger.warning("Failed to close discarded channel %r", channel, exc_info=True)
