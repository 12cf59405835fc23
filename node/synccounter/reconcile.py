# merge a fresh server snapshot with local state, whole record at a time
from typing import Dict, Iterable, List, Optional

from .models import Counter, PendingChange


def latest_pending_change(changes: Iterable[PendingChange], counter_id: str) -> Optional[PendingChange]:
    """Most recent queued change targeting `counter_id` (None if there is none)."""
    latest = None
    for change in changes:
        if change.id != counter_id:
            continue
        if latest is None or change.timestamp > latest.timestamp:
            latest = change
    return latest


def reconcile(
    server_counters: List[Counter],
    local_counters: List[Counter],
    pending_changes: List[PendingChange],
    last_server_sync: int,
) -> List[Counter]:
    """
    Pure merge, one entry per counter id:

    - no local snapshot: the server list as-is
    - local only: keep local
    - on both sides: keep local only if its latest pending change is newer
      than `last_server_sync` (the fetch cannot have seen it yet), else server
    - server only: appended in server order

    Recency trusts the client clock; there is no per-field merge.
    """
    server_by_id: Dict[str, Counter] = {c.id: c for c in server_counters}
    merged: List[Counter] = []
    seen = set()

    for local in local_counters:
        if local.id in seen:
            continue
        seen.add(local.id)

        server = server_by_id.get(local.id)
        if server is None:
            merged.append(local)
            continue

        change = latest_pending_change(pending_changes, local.id)
        if change is not None and change.timestamp > last_server_sync:
            merged.append(local)
        else:
            merged.append(server)

    for server in server_counters:
        if server.id not in seen:
            seen.add(server.id)
            merged.append(server)

    return merged
