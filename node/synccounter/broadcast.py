# live update fan-out: one bounded channel per /sync subscriber
import asyncio
import logging
from typing import AsyncIterator, Callable, List, Optional, Set
from uuid import uuid4

from .config import SUBSCRIBER_QUEUE_SIZE
from .counters import now_ms
from .models import Counter, InitialEvent, WireModel, encode_event

logger = logging.getLogger(__name__)

_CLOSED = object()


class ChannelClosed(Exception):
    pass


class Channel:
    """One subscriber: a bounded queue of serialized event lines."""

    def __init__(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE, name: Optional[str] = None):
        self.name = name or uuid4().hex[:8]
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def send(self, line: str) -> None:
        """
        Enqueue one line. Raises ChannelClosed, or asyncio.QueueFull when the
        reader has fallen too far behind.
        """
        if self.closed:
            raise ChannelClosed(self.name)
        self._queue.put_nowait(line)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # reader is being dropped anyway; make room for the sentinel
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def __repr__(self) -> str:
        return f"Channel({self.name})"


class Broadcaster:
    """Registry of subscriber channels with ordered, failure-tolerant publish."""

    def __init__(self, snapshot_provider: Callable[[], List[Counter]]):
        self._snapshot_provider = snapshot_provider
        self._channels: Set[Channel] = set()
        # lazily bound to the running loop (tests spin up several loops)
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop_id: Optional[int] = None

    def _get_lock(self) -> asyncio.Lock:
        loop_id = id(asyncio.get_running_loop())
        if self._lock is None or self._lock_loop_id != loop_id:
            self._lock = asyncio.Lock()
            self._lock_loop_id = loop_id
        return self._lock

    @property
    def subscriber_count(self) -> int:
        return len(self._channels)

    async def subscribe(self, channel: Channel) -> None:
        """
        Deliver the full current snapshot as an `initial` event, then register.
        Both happen under the lock, so nothing published can reach the channel
        ahead of its initial payload. Subscribing twice is a no-op.
        """
        async with self._get_lock():
            if channel in self._channels:
                return
            initial = InitialEvent(counters=self._snapshot_provider(), timestamp=now_ms())
            channel.send(encode_event(initial))
            self._channels.add(channel)
        logger.info("Subscriber %s connected (%d open)", channel, len(self._channels))

    async def unsubscribe(self, channel: Channel) -> None:
        async with self._get_lock():
            if channel not in self._channels:
                return
            self._channels.discard(channel)
        channel.close()
        logger.info("Subscriber %s disconnected (%d open)", channel, len(self._channels))

    async def publish(self, event: WireModel) -> int:
        """
        Write the event to every registered channel, in call order.
        Never raises: failing channels are logged and pruned.
        Returns the number of channels the event reached.
        """
        line = encode_event(event)
        async with self._get_lock():
            targets = list(self._channels)

        failed: List[Channel] = []
        for channel in targets:
            try:
                channel.send(line)
            except Exception as e:
                logger.warning("Dropping subscriber %s: %r", channel, e)
                failed.append(channel)

        if failed:
            async with self._get_lock():
                for channel in failed:
                    self._channels.discard(channel)
            for channel in failed:
                channel.close()

        logger.debug("Published %s to %d subscribers", getattr(event, "type", "?"), len(targets) - len(failed))
        return len(targets) - len(failed)

    async def close_all(self) -> None:
        async with self._get_lock():
            channels = list(self._channels)
            self._channels.clear()
        for channel in channels:
            channel.close()
