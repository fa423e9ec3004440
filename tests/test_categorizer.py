import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from components.categorizer import (
    AttemptRecord,
    Category,
    CategoryPolicy,
    TargetHistory,
    categorize,
    categorize_targets,
    cooldown_days,
    load_categorized,
)
from components.registry import Target

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _ago(**kw) -> datetime:
    return NOW - timedelta(**kw)


def _history(successes=(), failures=()) -> TargetHistory:
    records = [AttemptRecord("x", ts, True) for ts in successes]
    records += [AttemptRecord("x", ts, False, reason="boom") for ts in failures]
    return TargetHistory.from_records(records)


class InMemoryStore:
    def __init__(self, records=(), fail_with=None):
        self.records = list(records)
        self.fail_with = fail_with

    async def fetch_attempt_stats(self):
        if self.fail_with is not None:
            raise self.fail_with
        grouped = {}
        for r in self.records:
            grouped.setdefault(r.target_id, []).append(r)
        return {tid: TargetHistory.from_records(rs) for tid, rs in grouped.items()}


def test_history_reduction_tracks_latest_timestamps():
    h = _history(
        successes=[_ago(days=5), _ago(days=1), _ago(days=9)],
        failures=[_ago(days=3), _ago(hours=2)],
    )
    assert h.total_attempts == 5
    assert h.success_count == 3
    assert h.last_success == _ago(days=1)
    assert h.last_failure == _ago(hours=2)


def test_naive_timestamps_are_treated_as_utc():
    naive = _ago(days=1).replace(tzinfo=None)
    h = TargetHistory.from_records([AttemptRecord("x", naive, True)])
    assert h.last_success == _ago(days=1)


@pytest.mark.parametrize("history, expected", [
    (None, Category.NEVER_TESTED),
    (TargetHistory(), Category.NEVER_TESTED),
    (_history(failures=[_ago(days=10)]), Category.FAILED_ONLY),
    (_history(successes=[_ago(days=1), _ago(days=2), _ago(days=3)]), Category.RELIABLE_SUCCESS),
    (_history(successes=[_ago(days=1), _ago(days=2)]), Category.RECENT_MIXED),
    (_history(successes=[_ago(days=8), _ago(days=9), _ago(days=10)]), Category.RECENT_MIXED),
    (_history(successes=[_ago(days=13)], failures=[_ago(days=1)]), Category.RECENT_MIXED),
    (_history(successes=[_ago(days=20)]), Category.OLD_SUCCESS),
    (_history(successes=[_ago(days=30)]), Category.OLD_SUCCESS),
    (_history(successes=[_ago(days=45)]), Category.FAILED_ONLY),
])
def test_categorize_rules(history, expected):
    assert categorize(history, NOW) is expected


def test_window_edges_are_inclusive():
    h = _history(successes=[_ago(days=7)] * 3)
    assert categorize(h, NOW) is Category.RELIABLE_SUCCESS
    h = _history(successes=[_ago(days=7, seconds=1)] * 3)
    assert categorize(h, NOW) is Category.RECENT_MIXED
    h = _history(successes=[_ago(days=14, seconds=1)])
    assert categorize(h, NOW) is Category.OLD_SUCCESS


def test_thresholds_come_from_policy():
    policy = CategoryPolicy(reliable_min_successes=1, reliable_window_days=2, recent_window_days=3, failed_only_after_days=4)
    assert categorize(_history(successes=[_ago(days=1)]), NOW, policy) is Category.RELIABLE_SUCCESS
    assert categorize(_history(successes=[_ago(days=2, hours=12)]), NOW, policy) is Category.RECENT_MIXED
    assert categorize(_history(successes=[_ago(days=3, hours=12)]), NOW, policy) is Category.OLD_SUCCESS
    assert categorize(_history(successes=[_ago(days=5)]), NOW, policy) is Category.FAILED_ONLY


@pytest.mark.parametrize("age, expected", [
    (timedelta(minutes=1), 1),
    (timedelta(hours=23), 1),
    (timedelta(days=1), 2),
    (timedelta(days=2, hours=12), 1),
    (timedelta(days=3), 4),
    (timedelta(days=6, hours=1), 1),
    (timedelta(days=7), 0),
    (timedelta(days=40), 0),
])
def test_cooldown_windows(age, expected):
    assert cooldown_days(NOW - age, NOW) == expected


def test_cooldown_zero_without_failure_and_positive_for_fresh_failure():
    assert cooldown_days(None, NOW) == 0
    # clock skew: a failure "in the future" still counts as fresh
    assert cooldown_days(NOW + timedelta(hours=1), NOW) == 1


def test_every_target_gets_exactly_one_category():
    targets = [Target(f"site{i}.com") for i in range(6)]
    histories = {
        "site0.com": _history(successes=[_ago(days=1)] * 3),
        "site1.com": _history(successes=[_ago(days=10)]),
        "site2.com": _history(successes=[_ago(days=20)]),
        "site3.com": _history(failures=[_ago(days=20)]),
        "site4.com": _history(successes=[_ago(days=60)]),
    }
    out = categorize_targets(targets, histories, now=NOW)
    assert [ct.id for ct in out] == [t.id for t in targets]
    assert [ct.category for ct in out] == [
        Category.RELIABLE_SUCCESS,
        Category.RECENT_MIXED,
        Category.OLD_SUCCESS,
        Category.FAILED_ONLY,
        Category.FAILED_ONLY,
        Category.NEVER_TESTED,
    ]
    assert out[5].cooldown_days == 0


def test_reliable_target_with_fresh_failure_is_in_cooldown():
    # three successes, latest two days ago, plus a failure twelve hours ago
    h = _history(
        successes=[_ago(days=2), _ago(days=4), _ago(days=6)],
        failures=[_ago(hours=12)],
    )
    (ct,) = categorize_targets([Target("flaky.com")], {"flaky.com": h}, now=NOW)
    assert ct.category is Category.RELIABLE_SUCCESS
    assert ct.cooldown_days == 1
    assert ct.in_cooldown


@pytest.mark.asyncio
async def test_load_categorized_reads_store():
    store = InMemoryStore([
        AttemptRecord("a.com", _ago(days=1), True),
        AttemptRecord("b.com", _ago(hours=3), False),
    ])
    out = await load_categorized([Target("a.com"), Target("b.com"), Target("c.com")], store, now=NOW)
    assert [ct.category for ct in out] == [Category.RECENT_MIXED, Category.FAILED_ONLY, Category.NEVER_TESTED]
    assert [ct.cooldown_days for ct in out] == [0, 1, 0]


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    sqlite3.OperationalError("unable to open database file"),
    OSError("disk gone"),
    RuntimeError("reader backend crashed"),
    KeyError("total_attempts"),
])
async def test_unreachable_store_defaults_to_never_tested(error):
    store = InMemoryStore(fail_with=error)
    out = await load_categorized([Target("a.com"), Target("b.com")], store, now=NOW)
    assert all(ct.category is Category.NEVER_TESTED for ct in out)
    assert all(ct.cooldown_days == 0 for ct in out)


@pytest.mark.asyncio
async def test_no_store_means_no_history():
    out = await load_categorized([Target("a.com")], None, now=NOW)
    assert out[0].category is Category.NEVER_TESTED
