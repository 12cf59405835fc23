from datetime import datetime, timezone

from conftest import make_counter

from synccounter.counters import (
    apply_increments,
    goal_progress,
    normalize_counter,
    normalize_day_key,
    normalize_user_name,
    prune_history,
    remaining_to_goal,
    reset_daily_count,
    today_key,
    weekday_label,
)
from synccounter.models import DayHistory, IncrementGroup


def test_normalize_user_name():
    assert normalize_user_name("john") == "John"
    assert normalize_user_name("MARY") == "Mary"
    assert normalize_user_name("jOhN") == "John"
    assert normalize_user_name("a") == "A"
    assert normalize_user_name("") == ""


def test_normalize_day_key():
    assert normalize_day_key("2024-01-15") == "2024-01-15"
    assert normalize_day_key("2024-01-15T23:59:00") == "2024-01-15"
    # offset-aware datetimes are bucketed in UTC
    assert normalize_day_key("2024-01-15T23:30:00-02:00") == "2024-01-16"
    assert normalize_day_key("2024-01-15T10:00:00Z") == "2024-01-15"
    assert normalize_day_key(None) == today_key()
    assert normalize_day_key("not a date") == today_key()


def test_today_key_uses_utc():
    now = datetime(2024, 3, 1, 0, 30, tzinfo=timezone.utc)
    assert today_key(now) == "2024-03-01"


def test_weekday_label():
    assert weekday_label("2024-01-15") == "Monday"


def test_apply_increments_keeps_history_invariant():
    counter = make_counter(value=3)
    groups = [
        IncrementGroup(acting_user="alice", day_key="2024-01-15", count=2),
        IncrementGroup(acting_user="Bob", day_key="2024-01-15", count=1),
        IncrementGroup(acting_user="alice", day_key="2024-01-16", count=4),
    ]

    applied = apply_increments(counter, groups, today="2024-01-16")

    assert applied == 7
    assert counter.value == 10
    assert counter.users == {"Alice": 6, "Bob": 1}
    assert counter.history["2024-01-15"].users == {"Alice": 2, "Bob": 1}
    assert counter.history["2024-01-15"].total == 3
    assert counter.history["2024-01-15"].day == "Monday"
    assert counter.history["2024-01-16"].total == 4
    assert counter.daily_count == 4


def test_apply_increments_skips_nameless_groups():
    counter = make_counter()
    applied = apply_increments(counter, [IncrementGroup(acting_user="  ", count=3)])
    assert applied == 0
    assert counter.value == 0
    assert counter.history == {}


def test_normalize_counter_repairs_totals():
    counter = make_counter(
        daily_count=99,
        history={
            "2024-01-15": DayHistory(users={"Alice": 2, "Bob": 5}, total=1),
            "2024-01-14": DayHistory(users={"Alice": 1}, total=0),
        },
    )

    normalize_counter(counter, today="2024-01-15")

    assert counter.history["2024-01-15"].total == 7
    assert counter.history["2024-01-14"].total == 1
    assert counter.daily_count == 7


def test_normalize_counter_without_entry_for_today():
    counter = make_counter(daily_count=4, history={"2024-01-14": DayHistory(users={"Alice": 4}, total=4)})
    normalize_counter(counter, today="2024-01-15")
    assert counter.daily_count == 0


def test_prune_history_keeps_most_recent_days():
    history = {f"2024-01-{d:02d}": DayHistory(users={"A": d}, total=d) for d in range(1, 21)}
    counter = make_counter(history=history)

    pruned = prune_history(counter, 14)

    assert sorted(pruned.history) == [f"2024-01-{d:02d}" for d in range(7, 21)]
    # input left as it was
    assert len(counter.history) == 20


def test_prune_history_counts_days_not_entries():
    history = {f"2023-0{m}-01": DayHistory(users={"A": 1}, total=1) for m in range(1, 10)}
    history["2024-01-15"] = DayHistory(users={"A": 2}, total=2)
    counter = make_counter(history=history)

    assert sorted(prune_history(counter, 14).history) == ["2024-01-15"]
    assert prune_history(counter, 0).history == {}


def test_reset_daily_count_only_forgets_today():
    counter = make_counter(
        value=9,
        users={"Alice": 9},
        history={
            "2024-01-14": DayHistory(users={"Alice": 4}, total=4),
            "2024-01-15": DayHistory(users={"Alice": 5}, total=5),
        },
    )
    normalize_counter(counter, today="2024-01-15")
    assert counter.daily_count == 5

    reset_daily_count(counter, today="2024-01-15")

    assert counter.daily_count == 0
    assert list(counter.history) == ["2024-01-14"]
    assert (counter.value, counter.users) == (9, {"Alice": 9})


def test_goal_helpers():
    counter = make_counter(daily_goal=10, daily_count=4)
    assert goal_progress(counter) == 40
    assert remaining_to_goal(counter) == 6

    counter.daily_count = 15
    assert goal_progress(counter) == 100
    assert remaining_to_goal(counter) == 0

    no_goal = make_counter(daily_goal=None, daily_count=3)
    assert goal_progress(no_goal) == 0
    assert remaining_to_goal(no_goal) == 0
