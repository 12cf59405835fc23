# increment batching: one global debounce window, one increment-batch call per counter
import asyncio
import itertools
import logging
from typing import Callable, Dict, List, Optional, Set, Tuple

from .api_client import CounterApi
from .config import FLUSH_DELAY, MAX_BATCH_SIZE, SAFETY_FLUSH_INTERVAL
from .counters import normalize_day_key, normalize_user_name, now_ms
from .errors import RejectedError
from .local_store import LocalChangeStore
from .models import Counter, IncrementGroup, PendingIncrement
from .offline import apply_local_increment

logger = logging.getLogger(__name__)


def group_increments(items: List[PendingIncrement]) -> List[IncrementGroup]:
    """
    Sum increments per (user, day), in first-seen order.
    The count of each group equals the number of raw entries sharing its key.
    """
    counts: Dict[Tuple[str, str], int] = {}
    for item in items:
        key = (item.acting_user, item.day_key)
        counts[key] = counts.get(key, 0) + 1
    return [
        IncrementGroup(acting_user=user, day_key=day_key, count=count)
        for (user, day_key), count in counts.items()
    ]


class IncrementAggregator:
    def __init__(
        self,
        api: CounterApi,
        store: LocalChangeStore,
        is_online: Callable[[], bool],
        on_counter_update: Optional[Callable[[Counter], None]] = None,
        flush_delay: float = FLUSH_DELAY,
        max_batch_size: int = MAX_BATCH_SIZE,
        safety_interval: float = SAFETY_FLUSH_INTERVAL,
        clock: Callable[[], int] = now_ms,
    ):
        self.api = api
        self.store = store
        self.is_online = is_online
        self.on_counter_update = on_counter_update
        self.flush_delay = flush_delay
        self.max_batch_size = max_batch_size
        self.safety_interval = safety_interval
        self.clock = clock

        # taps survive restarts
        self._queue: List[PendingIncrement] = store.read_pending_increments()
        self._seq = itertools.count(1)

        # the pending debounce sleep; None once it has turned into a flush
        self._timer: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop_id: Optional[int] = None

    def _get_lock(self) -> asyncio.Lock:
        loop_id = id(asyncio.get_running_loop())
        if self._lock is None or self._lock_loop_id != loop_id:
            self._lock = asyncio.Lock()
            self._lock_loop_id = loop_id
        return self._lock

    def pending(self) -> List[PendingIncrement]:
        return list(self._queue)

    def pending_count(self, counter_id: Optional[str] = None) -> int:
        if counter_id is None:
            return len(self._queue)
        return sum(1 for item in self._queue if item.counter_id == counter_id)

    def _persist(self) -> None:
        self.store.write_pending_increments(self._queue)

    def record_increment(self, counter_id: str, acting_user: str, day_key: Optional[str] = None) -> PendingIncrement:
        now = self.clock()
        item = PendingIncrement(
            id=f"{counter_id}-{now}-{next(self._seq)}",
            counter_id=counter_id,
            acting_user=normalize_user_name(acting_user),
            day_key=normalize_day_key(day_key),
            timestamp=now,
        )
        self._queue.append(item)
        self._persist()
        self._schedule()
        return item

    def _schedule(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop yet: the safety net or an explicit flush picks it up
            return
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = loop.create_task(self._flush_later())
        self._tasks.add(self._timer)
        self._timer.add_done_callback(self._tasks.discard)

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.flush_delay)
        # past this point a reschedule must not cancel the in-flight flush
        self._timer = None
        try:
            await self.flush()
        except Exception:
            logger.exception("Scheduled flush failed")

    async def flush(self) -> int:
        """
        Send queued increments. Returns how many increments were consumed
        (sent successfully, or applied locally when offline).
        """
        async with self._get_lock():
            if not self._queue:
                return 0
            if not self.is_online():
                return self._apply_offline()

            by_counter: Dict[str, List[PendingIncrement]] = {}
            for item in self._queue:
                by_counter.setdefault(item.counter_id, []).append(item)
            batches = {cid: items[: self.max_batch_size] for cid, items in by_counter.items()}

            # different counters are independent: send them in parallel
            results = await asyncio.gather(
                *(self._send(cid, items) for cid, items in batches.items()),
                return_exceptions=True,
            )

            consumed = 0
            for (cid, items), result in zip(batches.items(), results):
                if result is None:
                    continue
                if isinstance(result, RejectedError):
                    logger.error("Server rejected batch for %s, dropping %d increments: %s", cid, len(items), result)
                    self._discard(items)
                    continue
                if isinstance(result, BaseException):
                    logger.warning("Batch for %s failed, keeping %d increments queued: %r", cid, len(items), result)
                    continue

                self._discard(items)
                consumed += len(items)
                self.store.upsert_counter(result)
                if self.on_counter_update:
                    self.on_counter_update(result)

            self._persist()
            if consumed:
                logger.info("Flushed %d increments across %d counters", consumed, len(batches))
            return consumed

    async def _send(self, counter_id: str, items: List[PendingIncrement]) -> Optional[Counter]:
        # went offline while other batches were in flight
        if not self.is_online():
            return None
        return await self.api.increment_batch(counter_id, group_increments(items))

    def _discard(self, items: List[PendingIncrement]) -> None:
        flushed = {item.id for item in items}
        self._queue = [item for item in self._queue if item.id not in flushed]

    def _apply_offline(self) -> int:
        """Fold every queued tap into local state and the pending-change queue."""
        items, self._queue = self._queue, []
        for item in items:
            counter = apply_local_increment(self.store, item.counter_id, item.acting_user, item.day_key)
            if counter is not None and self.on_counter_update:
                self.on_counter_update(counter)
        self._persist()
        logger.info("Offline: applied %d increments locally", len(items))
        return len(items)

    async def run_safety_net(self) -> None:
        while True:
            await asyncio.sleep(self.safety_interval)
            try:
                await self.flush()
            except Exception:
                logger.exception("Safety-net flush failed")

    def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._timer = None
