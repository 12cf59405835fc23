# optimistic local mutations: apply to the snapshot, queue a PendingChange
import logging
from typing import Any, Dict, Optional

from .counters import (
    apply_increments,
    normalize_counter,
    normalize_day_key,
    normalize_user_name,
    reset_daily_count,
)
from .local_store import LocalChangeStore
from .models import ChangeType, Counter, CounterUpdateIn, IncrementGroup, PendingChange

logger = logging.getLogger(__name__)


def apply_local_increment(
    store: LocalChangeStore,
    counter_id: str,
    acting_user: str,
    day_key: Optional[str] = None,
    delta: int = 1,
) -> Optional[Counter]:
    """
    Add `delta` to a counter in the local snapshot, attributed to `acting_user`
    on `day_key`, and queue the matching increment change.
    The change is queued even when the counter is not in the snapshot, so the
    tap still reaches the server on the next drain.
    """
    user = normalize_user_name(acting_user)
    day_key = normalize_day_key(day_key)

    counters = store.read_snapshot()
    counter = next((c for c in counters if c.id == counter_id), None)
    previous = counter.value if counter else None
    if counter is not None:
        apply_increments(counter, [IncrementGroup(acting_user=user, day_key=day_key, count=delta)])
        counter.last_updated = store.clock()
        store.write_snapshot(counters)
    else:
        logger.warning("Counter %s missing from local snapshot, queueing increment only", counter_id)

    store.enqueue_pending_change(
        PendingChange(
            id=counter_id,
            type=ChangeType.INCREMENT,
            timestamp=store.clock(),
            delta=delta,
            previous_value=previous,
            new_value=counter.value if counter else None,
            acting_user=user,
            day_key=day_key,
        )
    )
    return counter


def add_offline_counter(
    store: LocalChangeStore,
    name: str,
    value: int = 0,
    daily_goal: Optional[int] = None,
    counter_id: Optional[str] = None,
) -> Counter:
    now = store.clock()
    counter = Counter(
        id=counter_id or f"counter-{now}",
        name=name.strip(),
        value=value,
        daily_goal=daily_goal,
        last_updated=now,
    )
    counters = store.read_snapshot()
    counters.append(counter)
    store.write_snapshot(counters)
    store.enqueue_pending_change(
        PendingChange(
            id=counter.id,
            type=ChangeType.CREATE,
            timestamp=now,
            counter_data={"id": counter.id, "name": counter.name, "value": counter.value, "dailyGoal": daily_goal},
        )
    )
    return counter


def update_offline_counter(store: LocalChangeStore, counter_id: str, fields: Dict[str, Any]) -> Optional[Counter]:
    """
    Merge `fields` (snake_case) into a local counter and queue an update
    carrying the full editable field set. `reset_daily_count=True` drops
    today's contributions as well.
    When the counter is missing from the snapshot the update is still queued
    with just the given fields, and None is returned.
    """
    fields = dict(fields)
    reset = bool(fields.pop("reset_daily_count", False))
    now = store.clock()

    counters = store.read_snapshot()
    index = next((i for i, c in enumerate(counters) if c.id == counter_id), None)
    if index is None:
        logger.warning("Counter %s missing from local snapshot, queueing update only", counter_id)
        payload = CounterUpdateIn.model_validate(dict(fields, reset_daily_count=True) if reset else fields)
        store.enqueue_pending_change(
            PendingChange(
                id=counter_id,
                type=ChangeType.UPDATE,
                timestamp=now,
                counter_data=payload.model_dump(by_alias=True, exclude_unset=True, mode="json"),
            )
        )
        return None

    merged = counters[index].model_dump()
    merged.update(fields)
    merged["id"] = counter_id
    merged["last_updated"] = now
    updated = Counter.model_validate(merged)
    if reset:
        reset_daily_count(updated)
    updated = normalize_counter(updated)
    counters[index] = updated
    store.write_snapshot(counters)

    wire = updated.to_wire()
    counter_data = {k: wire[k] for k in ("name", "value", "dailyGoal", "users", "history")}
    if reset:
        counter_data["resetDailyCount"] = True
    store.enqueue_pending_change(
        PendingChange(id=counter_id, type=ChangeType.UPDATE, timestamp=now, counter_data=counter_data)
    )
    return updated


def delete_offline_counter(store: LocalChangeStore, counter_id: str) -> bool:
    """
    Drop a counter from the snapshot and queue its delete. The delete is
    queued even without a local copy; returns whether one was removed.
    """
    counters = store.read_snapshot()
    doomed = next((c for c in counters if c.id == counter_id), None)
    if doomed is not None:
        store.write_snapshot([c for c in counters if c.id != counter_id])
    else:
        logger.warning("Counter %s missing from local snapshot, queueing delete only", counter_id)
    store.enqueue_pending_change(
        PendingChange(
            id=counter_id,
            type=ChangeType.DELETE,
            timestamp=store.clock(),
            counter_data={"name": doomed.name, "value": doomed.value} if doomed else None,
        )
    )
    return doomed is not None
