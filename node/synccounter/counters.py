# counter math shared by server and client: history invariant, day keys, increments
import time
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional

from .models import Counter, DayHistory, IncrementGroup


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_user_name(name: str) -> str:
    """'jOhN' -> 'John'. Empty stays empty."""
    name = name.strip()
    return name[:1].upper() + name[1:].lower()


def today_key(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")


def normalize_day_key(raw: Optional[str]) -> str:
    """
    Reduce any ISO date/datetime string to YYYY-MM-DD (UTC).
    Empty or unparsable input falls back to today.
    """
    if not raw:
        return today_key()
    raw = raw.strip()
    try:
        return date.fromisoformat(raw).isoformat()
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return today_key()
    if parsed.tzinfo is None:
        return parsed.date().isoformat()
    return today_key(parsed)


def weekday_label(day_key: str) -> str:
    return date.fromisoformat(day_key).strftime("%A")


def normalize_counter(counter: Counter, today: Optional[str] = None) -> Counter:
    """
    Restore the history invariant in place:
    history[d].total == sum(history[d].users) for every day, and
    daily_count == history[today].total (0 when there is no entry for today).
    """
    today = today or today_key()
    for entry in counter.history.values():
        entry.total = sum(entry.users.values())
    todays = counter.history.get(today)
    counter.daily_count = todays.total if todays else 0
    return counter


def apply_increments(
    counter: Counter,
    groups: Iterable[IncrementGroup],
    today: Optional[str] = None,
) -> int:
    """
    Add grouped (user, day, count) contributions to value, users and history.
    Every group lands in the history bucket of its own day key.
    Returns the number of increments applied.
    """
    applied = 0
    for group in groups:
        user = normalize_user_name(group.acting_user)
        if not user:
            continue
        day_key = normalize_day_key(group.day_key)

        counter.users[user] = counter.users.get(user, 0) + group.count

        entry = counter.history.get(day_key)
        if entry is None:
            entry = DayHistory()
            counter.history[day_key] = entry
        entry.day = weekday_label(day_key)
        entry.users[user] = entry.users.get(user, 0) + group.count

        applied += group.count

    counter.value += applied
    normalize_counter(counter, today)
    return applied


def prune_history(counter: Counter, keep_days: int) -> Counter:
    """
    Return a copy whose history only covers the `keep_days` calendar days
    ending at its newest day key. Sparse old entries are dropped too.
    """
    if keep_days <= 0 or not counter.history:
        return counter.model_copy(update={"history": {}})
    newest = max(date.fromisoformat(k) for k in counter.history)
    cutoff = (newest - timedelta(days=keep_days - 1)).isoformat()
    return counter.model_copy(
        update={"history": {k: v for k, v in counter.history.items() if k >= cutoff}}
    )


def reset_daily_count(counter: Counter, today: Optional[str] = None) -> Counter:
    """
    Forget today's per-user contributions in place so daily_count starts
    over at 0. value and all-time users are untouched.
    """
    today = today or today_key()
    counter.history.pop(today, None)
    return normalize_counter(counter, today)


# ----------- daily goal helpers -----------

def has_daily_goal(counter: Counter) -> bool:
    return counter.daily_goal is not None and counter.daily_goal > 0


def goal_progress(counter: Counter) -> int:
    """Percentage of today's goal reached, capped at 100."""
    if not has_daily_goal(counter):
        return 0
    return min(100, round(counter.daily_count / counter.daily_goal * 100))


def remaining_to_goal(counter: Counter) -> int:
    if not has_daily_goal(counter):
        return 0
    return max(0, counter.daily_goal - counter.daily_count)
