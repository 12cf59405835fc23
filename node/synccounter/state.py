# in-memory authoritative counter store + helpers
import threading
from typing import Any, Dict, List, Optional

from .counters import normalize_counter, now_ms
from .models import Counter

# counters[counter_id] = Counter
counters: Dict[str, Counter] = {}

# every call below is atomic with respect to the others
_lock = threading.Lock()


def _stamp(counter: Counter) -> Counter:
    counter.last_updated = now_ms()
    return normalize_counter(counter)


def _export(counter: Counter) -> Counter:
    # callers get their own copy, never the stored object
    return counter.model_copy(deep=True)


def list_counters() -> List[Counter]:
    with _lock:
        result = [normalize_counter(c) for c in counters.values()]
        result.sort(key=lambda c: (c.name.lower(), c.id))
        return [_export(c) for c in result]


def get_counter(counter_id: str) -> Optional[Counter]:
    with _lock:
        counter = counters.get(counter_id)
        if counter is None:
            return None
        return _export(normalize_counter(counter))


def add_counter(counter: Counter) -> Counter:
    """
    Insert (or replace) a counter and stamp last_updated.
    """
    with _lock:
        stored = _stamp(counter.model_copy(deep=True))
        counters[stored.id] = stored
        return _export(stored)


def update_counter(counter_id: str, fields: Dict[str, Any]) -> Optional[Counter]:
    """
    Merge `fields` (snake_case attribute names) into an existing counter.
    Returns None if the counter does not exist.
    """
    with _lock:
        current = counters.get(counter_id)
        if current is None:
            return None
        merged = current.model_dump()
        merged.update(fields)
        merged["id"] = counter_id
        stored = _stamp(Counter.model_validate(merged))
        counters[counter_id] = stored
        return _export(stored)


def delete_counter(counter_id: str) -> bool:
    with _lock:
        return counters.pop(counter_id, None) is not None


def clear() -> None:
    with _lock:
        counters.clear()
