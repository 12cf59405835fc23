# client-side durable storage: snapshot, pending changes, aggregator queue (reads never raise)
import errno
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from pydantic import TypeAdapter, ValidationError

from .config import HISTORY_RETENTION_DAYS
from .counters import normalize_counter, now_ms, prune_history
from .errors import StorageQuotaError
from .models import Counter, OfflineCounterData, PendingChange, PendingIncrement

logger = logging.getLogger(__name__)

COUNTERS_KEY = "offline_counters"
PENDING_CHANGES_KEY = "pending_changes"
PENDING_INCREMENTS_KEY = "pending_increments"

_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}

_increments_adapter: TypeAdapter = TypeAdapter(List[PendingIncrement])


class KeyValueBackend(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryBackend:
    """Dict-backed store. `max_bytes` caps the total size of all values."""

    def __init__(self, max_bytes: Optional[int] = None):
        self.max_bytes = max_bytes
        self.data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        if self.max_bytes is not None:
            others = sum(len(v) for k, v in self.data.items() if k != key)
            if others + len(value) > self.max_bytes:
                raise StorageQuotaError(f"{key}: {len(value)} bytes exceeds quota")
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FileBackend:
    """One JSON file per key under `directory`, replaced atomically."""

    def __init__(self, directory, max_bytes: Optional[int] = None):
        self.directory = Path(directory)
        self.max_bytes = max_bytes

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        if self.max_bytes is not None and len(value.encode("utf-8")) > self.max_bytes:
            raise StorageQuotaError(f"{key}: value exceeds {self.max_bytes} bytes")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{key}-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(value)
                os.replace(tmp, self._path(key))
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            if e.errno in _QUOTA_ERRNOS:
                raise StorageQuotaError(str(e)) from e
            raise

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass


class LocalChangeStore:
    """Last-known counter snapshot plus the queue of unconfirmed mutations."""

    def __init__(
        self,
        backend: KeyValueBackend,
        clock: Callable[[], int] = now_ms,
        retention_days: int = HISTORY_RETENTION_DAYS,
    ):
        self.backend = backend
        self.clock = clock
        self.retention_days = retention_days

    # ----------- snapshot -----------

    def _read_data(self) -> Optional[OfflineCounterData]:
        try:
            raw = self.backend.get(COUNTERS_KEY)
            if raw is None:
                return None
            return OfflineCounterData.model_validate_json(raw)
        except (OSError, ValidationError, ValueError) as e:
            logger.error("Failed to read offline counters: %s", e)
            return None

    def has_snapshot(self) -> bool:
        data = self._read_data()
        return data is not None and bool(data.counters)

    def read_snapshot(self) -> List[Counter]:
        data = self._read_data()
        if data is None:
            return []
        return [normalize_counter(c) for c in data.counters]

    def last_sync(self) -> int:
        data = self._read_data()
        return data.last_sync if data else 0

    def last_server_sync(self) -> int:
        data = self._read_data()
        return data.last_server_sync if data else 0

    def is_stale(self, threshold_seconds: float) -> bool:
        return self.clock() - self.last_sync() > threshold_seconds * 1000

    def write_snapshot(self, counters: Iterable[Counter], server_sync_time: Optional[int] = None) -> bool:
        """
        Persist the snapshot. On a quota failure retry once with history cut to
        the most recent `retention_days` days; if that fails too, wipe the store.
        Returns True when the snapshot (full or reduced) was stored.
        """
        counters = [normalize_counter(c) for c in counters]
        existing = self._read_data()
        data = OfflineCounterData(
            counters=counters,
            last_sync=self.clock(),
            last_server_sync=existing.last_server_sync if existing else 0,
        )
        if server_sync_time:
            data.last_server_sync = server_sync_time

        try:
            self.backend.set(COUNTERS_KEY, data.model_dump_json(by_alias=True))
            return True
        except StorageQuotaError as e:
            logger.warning("Snapshot write hit storage quota (%s), pruning history", e)
        except OSError as e:
            logger.error("Failed to save offline counters: %s", e)
            return False

        reduced = data.model_copy(
            update={"counters": [prune_history(c, self.retention_days) for c in counters]}
        )
        try:
            self.backend.set(COUNTERS_KEY, reduced.model_dump_json(by_alias=True))
            return True
        except (StorageQuotaError, OSError) as e:
            logger.error("Reduced snapshot still rejected (%s), clearing local state", e)
        self.clear()
        return False

    def upsert_counter(self, counter: Counter) -> None:
        counters = self.read_snapshot()
        for i, existing in enumerate(counters):
            if existing.id == counter.id:
                counters[i] = counter
                break
        else:
            counters.append(counter)
        self.write_snapshot(counters)

    def remove_counter(self, counter_id: str) -> bool:
        counters = self.read_snapshot()
        kept = [c for c in counters if c.id != counter_id]
        if len(kept) == len(counters):
            return False
        self.write_snapshot(kept)
        return True

    # ----------- pending changes -----------

    def read_pending_changes(self) -> List[PendingChange]:
        try:
            raw = self.backend.get(PENDING_CHANGES_KEY)
            if raw is None:
                return []
            entries = TypeAdapter(List[dict]).validate_json(raw)
        except (OSError, ValidationError, ValueError) as e:
            logger.error("Failed to get pending changes: %s", e)
            return []

        changes = []
        for entry in entries:
            try:
                changes.append(PendingChange.model_validate(entry))
            except ValidationError as e:
                logger.error("Skipping malformed pending change %r: %s", entry, e)
        return changes

    def _write_pending_changes(self, changes: List[PendingChange]) -> None:
        payload = "[" + ",".join(c.model_dump_json(by_alias=True) for c in changes) + "]"
        try:
            self.backend.set(PENDING_CHANGES_KEY, payload)
        except OSError as e:
            logger.error("Failed to save pending changes: %s", e)
        except StorageQuotaError as e:
            logger.error("Pending changes rejected by storage quota: %s", e)

    def enqueue_pending_change(self, change: PendingChange) -> None:
        changes = self.read_pending_changes()
        changes.append(change)
        self._write_pending_changes(changes)

    def remove_pending_changes(self, applied: Iterable[PendingChange]) -> None:
        """
        Drop one stored occurrence per applied change. Entries queued while a
        drain was in flight are left alone.
        """
        remaining = self.read_pending_changes()
        for change in applied:
            try:
                remaining.remove(change)
            except ValueError:
                continue
        self._write_pending_changes(remaining)

    def replace_pending_change(self, old: PendingChange, new: PendingChange) -> None:
        """Swap one stored occurrence of `old` for `new`, keeping its queue position."""
        changes = self.read_pending_changes()
        try:
            changes[changes.index(old)] = new
        except ValueError:
            changes.append(new)
        self._write_pending_changes(changes)

    def clear_pending_changes(self) -> None:
        try:
            self.backend.delete(PENDING_CHANGES_KEY)
        except OSError as e:
            logger.error("Failed to clear pending changes: %s", e)

    # ----------- pending increments -----------

    def read_pending_increments(self) -> List[PendingIncrement]:
        try:
            raw = self.backend.get(PENDING_INCREMENTS_KEY)
            if raw is None:
                return []
            return _increments_adapter.validate_json(raw)
        except (OSError, ValidationError, ValueError) as e:
            logger.error("Failed to get pending increments: %s", e)
            return []

    def write_pending_increments(self, increments: List[PendingIncrement]) -> None:
        try:
            self.backend.set(
                PENDING_INCREMENTS_KEY,
                _increments_adapter.dump_json(increments, by_alias=True).decode("utf-8"),
            )
        except (OSError, StorageQuotaError) as e:
            logger.error("Failed to save pending increments: %s", e)

    def clear(self) -> None:
        for key in (COUNTERS_KEY, PENDING_CHANGES_KEY, PENDING_INCREMENTS_KEY):
            try:
                self.backend.delete(key)
            except OSError as e:
                logger.error("Failed to clear %s: %s", key, e)
