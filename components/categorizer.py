from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from auditor.config import Config

from .registry import Target

logger = logging.getLogger(__name__)

_DAY = timedelta(days=1)


class Category(str, Enum):
    # declaration order is the scheduling priority order
    NEVER_TESTED = "never_tested"
    RELIABLE_SUCCESS = "reliable_success"
    RECENT_MIXED = "recent_mixed"
    OLD_SUCCESS = "old_success"
    FAILED_ONLY = "failed_only"


PRIORITY_ORDER: Tuple[Category, ...] = tuple(Category)


@dataclass(frozen=True)
class AttemptRecord:
    target_id: str
    timestamp: datetime
    success: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class TargetHistory:
    """Per-target reduction of the attempt history."""
    total_attempts: int = 0
    success_count: int = 0
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None

    @classmethod
    def from_records(cls, records: Iterable[AttemptRecord]) -> "TargetHistory":
        total = 0
        successes = 0
        last_success: Optional[datetime] = None
        last_failure: Optional[datetime] = None
        for r in records:
            total += 1
            ts = as_utc(r.timestamp)
            if r.success:
                successes += 1
                if last_success is None or ts > last_success:
                    last_success = ts
            elif last_failure is None or ts > last_failure:
                last_failure = ts
        return cls(total, successes, last_success, last_failure)


@dataclass(frozen=True)
class CategoryPolicy:
    reliable_min_successes: int = 3
    reliable_window_days: int = 7
    recent_window_days: int = 14
    failed_only_after_days: int = 30
    cooldown_windows_days: Tuple[int, ...] = (1, 3, 7)

    @classmethod
    def from_config(cls, cfg: Config) -> "CategoryPolicy":
        return cls(
            reliable_min_successes=cfg.reliable_min_successes,
            reliable_window_days=cfg.reliable_window_days,
            recent_window_days=cfg.recent_window_days,
            failed_only_after_days=cfg.failed_only_after_days,
            cooldown_windows_days=tuple(cfg.cooldown_windows_days),
        )


class OutcomeReader(Protocol):
    async def fetch_attempt_stats(self) -> Mapping[str, TargetHistory]: ...


@dataclass(frozen=True)
class CategorizedTarget:
    target: Target
    category: Category
    cooldown_days: int = 0

    @property
    def id(self) -> str:
        return self.target.id

    @property
    def in_cooldown(self) -> bool:
        return self.cooldown_days > 0


def as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _age_days(ts: datetime, now: datetime) -> float:
    return max(0.0, (now - as_utc(ts)) / _DAY)


def categorize(history: Optional[TargetHistory], now: datetime, policy: CategoryPolicy = CategoryPolicy()) -> Category:
    """
    Ordered rules, first match wins:

      never_tested      no attempt at all
      failed_only       no success ever
      reliable_success  >= min successes and last success within the reliable window
      recent_mixed      last success within the recent window
      old_success       last success within the failed-only horizon
      failed_only       last success older than that horizon
    """
    if history is None or history.total_attempts <= 0:
        return Category.NEVER_TESTED
    if history.success_count <= 0 or history.last_success is None:
        return Category.FAILED_ONLY

    age = _age_days(history.last_success, as_utc(now))
    if history.success_count >= policy.reliable_min_successes and age <= policy.reliable_window_days:
        return Category.RELIABLE_SUCCESS
    if age <= policy.recent_window_days:
        return Category.RECENT_MIXED
    if age <= policy.failed_only_after_days:
        return Category.OLD_SUCCESS
    return Category.FAILED_ONLY


def cooldown_days(last_failure: Optional[datetime], now: datetime, policy: CategoryPolicy = CategoryPolicy()) -> int:
    """
    Whole days left before a failed target may be picked again: the remainder
    of the first cooldown window its last failure still falls inside
    (1 day, then 3, then 7 by default), rounded up. 0 once past the last window.
    """
    if last_failure is None:
        return 0
    age = _age_days(last_failure, as_utc(now))
    for window in policy.cooldown_windows_days:
        if age < window:
            return max(1, math.ceil(window - age))
    return 0


def categorize_targets(
    targets: Sequence[Target],
    histories: Mapping[str, TargetHistory],
    *,
    now: Optional[datetime] = None,
    policy: CategoryPolicy = CategoryPolicy(),
) -> List[CategorizedTarget]:
    """Every target comes back exactly once, in registry order."""
    now = as_utc(now or datetime.now(timezone.utc))
    out: List[CategorizedTarget] = []
    for t in targets:
        h = histories.get(t.id)
        out.append(
            CategorizedTarget(
                target=t,
                category=categorize(h, now, policy),
                cooldown_days=cooldown_days(h.last_failure if h else None, now, policy),
            )
        )
    return out


async def load_categorized(
    targets: Sequence[Target],
    store: Optional[OutcomeReader],
    *,
    now: Optional[datetime] = None,
    policy: CategoryPolicy = CategoryPolicy(),
) -> List[CategorizedTarget]:
    """
    Categorize against the store's history. An unreachable store degrades to
    "no history" (everything never_tested, no cooldown) instead of failing.
    """
    histories: Mapping[str, TargetHistory] = {}
    if store is not None:
        try:
            histories = await store.fetch_attempt_stats()
        except Exception as e:
            logger.warning(
                "Outcome store unavailable (%s); treating every target as never tested", e, exc_info=True
            )
            histories = {}
    return categorize_targets(targets, histories, now=now, policy=policy)

