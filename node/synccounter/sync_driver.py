# sync driver: connectivity transitions, queue drain, fetch-and-reconcile, live updates
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .aggregator import IncrementAggregator
from .api_client import CounterApi
from .config import CURRENT_USER, DATA_DIR, POLL_INTERVAL, SERVER_URL, STALE_AFTER
from .counters import normalize_user_name, now_ms, today_key
from .errors import NetworkError, RejectedError, SyncError, UnknownChangeError
from .local_store import FileBackend, LocalChangeStore
from .models import (
    ChangeType,
    Counter,
    CounterDeletedEvent,
    CounterUpdateIn,
    IncrementGroup,
    InitialEvent,
    PendingChange,
)
from .offline import (
    add_offline_counter,
    apply_local_increment,
    delete_offline_counter,
    update_offline_counter,
)
from .reconcile import latest_pending_change, reconcile

logger = logging.getLogger(__name__)


class DrainState(str, Enum):
    IDLE = "idle"
    DRAINING = "draining"


class SyncStatus(str, Enum):
    OFFLINE = "offline"   # possibly-stale local data: offline, changes queued, or last sync failed
    SYNCING = "syncing"
    SYNCED = "synced"


class SyncDriver:
    def __init__(
        self,
        api: CounterApi,
        store: LocalChangeStore,
        aggregator: Optional[IncrementAggregator] = None,
        clock: Callable[[], int] = now_ms,
        online: bool = True,
        current_user: str = CURRENT_USER,
        stale_after: float = STALE_AFTER,
    ):
        self.api = api
        self.store = store
        self.aggregator = aggregator
        self.clock = clock
        self.online = online
        self.current_user = normalize_user_name(current_user)
        self.stale_after = stale_after

        self.drain_state = DrainState.IDLE
        self.subscribed = False
        # the last drain and fetch both went through
        self.last_sync_ok = False

    # ----------- state exposed to the UI -----------

    @property
    def status(self) -> SyncStatus:
        if not self.online:
            return SyncStatus.OFFLINE
        if self.drain_state is DrainState.DRAINING:
            return SyncStatus.SYNCING
        if not self.last_sync_ok or self.pending_count():
            return SyncStatus.OFFLINE
        return SyncStatus.SYNCED

    def pending_count(self) -> int:
        return len(self.store.read_pending_changes())

    def is_stale(self) -> bool:
        return self.store.is_stale(self.stale_after)

    def counters(self) -> List[Counter]:
        return self.store.read_snapshot()

    # ----------- connectivity -----------

    async def set_online(self, online: bool) -> None:
        was_online, self.online = self.online, online
        if online and not was_online:
            logger.info("Back online - syncing data")
            await self.drain()
            if self.aggregator is not None:
                await self.aggregator.flush()
        elif was_online and not online:
            # in-flight drains and flushes notice and stop issuing requests
            self.last_sync_ok = False
            logger.info("Gone offline")

    # ----------- drain -----------

    async def drain(self) -> bool:
        """
        Push every pending change to the server, oldest first.
        Returns True when the whole queue went through (and the snapshot was
        refreshed), False on partial success or when a drain is already running.
        """
        if self.drain_state is DrainState.DRAINING:
            logger.warning("Sync already in progress, skipping duplicate call")
            return False
        self.drain_state = DrainState.DRAINING
        try:
            complete = await self._drain()
            if complete:
                await self.refresh()
            else:
                self.last_sync_ok = False
            return complete
        finally:
            self.drain_state = DrainState.IDLE

    async def _drain(self) -> bool:
        changes = sorted(self.store.read_pending_changes(), key=lambda c: c.timestamp)
        if changes:
            logger.info("Syncing %d offline changes", len(changes))

        applied: List[PendingChange] = []
        blocked = set()
        complete = True
        try:
            for change in changes:
                if not self.online:
                    logger.info("Went offline mid-drain, leaving remaining changes queued")
                    complete = False
                    break
                if change.id in blocked:
                    complete = False
                    continue
                try:
                    await self._send(change)
                except NetworkError as e:
                    logger.warning("Failed to sync %s change for %s: %s", change.type.value, change.id, e)
                    blocked.add(change.id)
                    complete = False
                    continue
                except (RejectedError, UnknownChangeError) as e:
                    logger.error("Discarding %s change for %s: %s", change.type.value, change.id, e)
                applied.append(change)
        finally:
            if applied:
                self.store.remove_pending_changes(applied)
        return complete

    async def _send(self, change: PendingChange) -> None:
        if change.type is ChangeType.INCREMENT:
            delta = change.delta or 1
            user = change.acting_user or self.current_user or None
            if delta > 1 and user:
                group = IncrementGroup(acting_user=user, day_key=change.day_key, count=delta)
                await self.api.increment_batch(change.id, [group])
            else:
                for sent in range(delta):
                    try:
                        await self.api.increment(change.id, user, change.day_key)
                    except NetworkError:
                        # keep only the part the server has not counted yet
                        if sent:
                            self.store.replace_pending_change(
                                change, change.model_copy(update={"delta": delta - sent})
                            )
                        raise
        elif change.type is ChangeType.CREATE:
            data = dict(change.counter_data or {})
            data.setdefault("id", change.id)
            await self.api.create_counter(data)
        elif change.type is ChangeType.UPDATE:
            await self.api.update_counter(change.id, change.counter_data or {})
        elif change.type is ChangeType.DELETE:
            await self.api.delete_counter(change.id)
        else:
            raise UnknownChangeError(f"unknown change type {change.type!r}")

    # ----------- fetch and reconcile -----------

    def merge_server_data(self, server_counters: List[Counter], fetched_at: int) -> List[Counter]:
        merged = reconcile(
            server_counters,
            self.store.read_snapshot(),
            self.store.read_pending_changes(),
            self.store.last_server_sync(),
        )
        self.store.write_snapshot(merged, server_sync_time=fetched_at)
        self.last_sync_ok = True
        return merged

    async def refresh(self) -> List[Counter]:
        """Fetch the server snapshot and reconcile. Offline or failing: local data."""
        if not self.online:
            return self.store.read_snapshot()
        # taken before the request so changes queued during it count as unseen
        fetched_at = self.clock()
        try:
            server_counters = await self.api.list_counters()
        except SyncError as e:
            logger.warning("Failed to fetch counters: %s", e)
            self.last_sync_ok = False
            return self.store.read_snapshot()
        return self.merge_server_data(server_counters, fetched_at)

    async def poll_loop(self, interval: float = POLL_INTERVAL) -> None:
        """Fallback while no live subscription is open."""
        while True:
            if self.online and not self.subscribed:
                await self.refresh()
            await asyncio.sleep(interval)

    # ----------- user mutations -----------

    async def create_counter(self, name: str, value: int = 0, daily_goal: Optional[int] = None) -> Counter:
        if self.online:
            try:
                counter = await self.api.create_counter({"name": name, "value": value, "dailyGoal": daily_goal})
                self.store.upsert_counter(counter)
                return counter
            except NetworkError as e:
                logger.warning("Create failed, keeping it offline: %s", e)
        return add_offline_counter(self.store, name, value, daily_goal)

    async def edit_counter(self, counter_id: str, fields: Dict[str, Any]) -> Optional[Counter]:
        """`fields` uses attribute names (name, value, daily_goal, ...)."""
        if self.online:
            payload = CounterUpdateIn.model_validate(fields).model_dump(by_alias=True, exclude_unset=True, mode="json")
            if "name" not in payload:
                local = next((c for c in self.store.read_snapshot() if c.id == counter_id), None)
                if local is not None:
                    payload["name"] = local.name
            try:
                counter = await self.api.update_counter(counter_id, payload)
                self.store.upsert_counter(counter)
                return counter
            except NetworkError as e:
                logger.warning("Edit failed, keeping it offline: %s", e)
        return update_offline_counter(self.store, counter_id, fields)

    async def remove_counter(self, counter_id: str) -> bool:
        if self.online:
            try:
                await self.api.delete_counter(counter_id)
                self.store.remove_counter(counter_id)
                return True
            except NetworkError as e:
                logger.warning("Delete failed, keeping it offline: %s", e)
        return delete_offline_counter(self.store, counter_id)

    async def decrement(self, counter_id: str) -> Counter:
        """Online only: decrements are not queued for later."""
        if not self.online:
            raise NetworkError("cannot decrement while offline")
        counter = await self.api.decrement(counter_id)
        self.store.upsert_counter(counter)
        return counter

    def tap(self, counter_id: str, day_key: Optional[str] = None) -> None:
        """One increment by the current user, batched when an aggregator is wired."""
        day_key = day_key or today_key()
        if self.aggregator is not None:
            self.aggregator.record_increment(counter_id, self.current_user, day_key)
        else:
            apply_local_increment(self.store, counter_id, self.current_user, day_key)

    # ----------- live updates -----------

    def apply_event(self, event: Any, received_at: Optional[int] = None) -> None:
        """
        Fold one push event into the local snapshot. Counters with local
        changes still queued are left alone until the next drain.
        """
        if isinstance(event, InitialEvent):
            self.merge_server_data(event.counters, received_at or self.clock())
            return

        pending = self.store.read_pending_changes()
        if isinstance(event, CounterDeletedEvent):
            if latest_pending_change(pending, event.counter_id) is None:
                self.store.remove_counter(event.counter_id)
            return

        counter = event.counter
        if latest_pending_change(pending, counter.id) is None:
            self.store.upsert_counter(counter)

    async def listen(self) -> None:
        """Consume GET /sync until it ends; polling covers the gaps."""
        opened_at = self.clock()
        try:
            async for event in self.api.stream_events():
                if not self.subscribed:
                    self.subscribed = True
                    logger.info("Live updates connected")
                self.apply_event(event, received_at=opened_at)
        except NetworkError as e:
            logger.warning("Live update stream failed: %s", e)
        finally:
            self.subscribed = False


def build_client(
    base_url: str = SERVER_URL,
    data_dir: str = DATA_DIR,
    current_user: str = CURRENT_USER,
) -> SyncDriver:
    """Wire store, transport, aggregator and driver for one client process."""
    store = LocalChangeStore(FileBackend(data_dir))
    api = CounterApi(base_url)
    driver = SyncDriver(api, store, current_user=current_user)
    driver.aggregator = IncrementAggregator(api, store, is_online=lambda: driver.online)
    return driver
