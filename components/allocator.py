from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set

from .categorizer import PRIORITY_ORDER, CategorizedTarget, Category

logger = logging.getLogger(__name__)


@dataclass
class BatchSelection:
    allocation: Dict[Category, int] = field(default_factory=dict)
    selected: List[CategorizedTarget] = field(default_factory=list)
    available_counts: Dict[Category, int] = field(default_factory=dict)
    cooldown_counts: Dict[Category, int] = field(default_factory=dict)

    @property
    def selected_ids(self) -> List[str]:
        return [ct.id for ct in self.selected]


def partition_pools(
    categorized: Sequence[CategorizedTarget],
) -> tuple[Dict[Category, List[CategorizedTarget]], Dict[Category, List[CategorizedTarget]]]:
    """Split into (available, in_cooldown) pools per category."""
    available: Dict[Category, List[CategorizedTarget]] = {c: [] for c in PRIORITY_ORDER}
    cooling: Dict[Category, List[CategorizedTarget]] = {c: [] for c in PRIORITY_ORDER}
    for ct in categorized:
        (cooling if ct.in_cooldown else available)[ct.category].append(ct)
    return available, cooling


def compute_allocation(
    available_counts: Mapping[Category, int],
    batch_size: int,
    percentages: Mapping[Category, int],
) -> Dict[Category, int]:
    """
    Pass 1: floor(pct/100 * batch) per category, clamped to what is available
    and to the slots not yet handed out (percentages may sum past 100).
    Pass 2: hand leftover slots out in priority order, so never_tested is
    drained before lower categories get extra slots.

    The result never sums past ``batch_size``.
    """
    allocation: Dict[Category, int] = {}
    remaining = max(0, batch_size)
    for cat in PRIORITY_ORDER:
        pct = max(0, int(percentages.get(cat, 0)))
        requested = pct * batch_size // 100
        allocation[cat] = min(requested, max(0, available_counts.get(cat, 0)), remaining)
        remaining -= allocation[cat]

    for cat in PRIORITY_ORDER:
        if remaining <= 0:
            break
        extra = min(remaining, max(0, available_counts.get(cat, 0)) - allocation[cat])
        if extra > 0:
            allocation[cat] += extra
            remaining -= extra
    return allocation


def _as_category_map(percentages: Mapping) -> Dict[Category, int]:
    return {Category(k): int(v) for k, v in percentages.items()}


def select_batch(
    categorized: Sequence[CategorizedTarget],
    batch_size: int,
    percentages: Mapping,
    *,
    rng: Optional[random.Random] = None,
) -> BatchSelection:
    """
    Pick at most ``batch_size`` cooldown-free targets.

    ``percentages`` may be keyed by ``Category`` or by its string value.
    Each category's pool is shuffled with ``rng`` (fresh ``random.Random()``
    when omitted) and the first N taken. A universe smaller than the batch is
    not an error: everything eligible is returned.
    """
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    rng = rng or random.Random()
    pct = _as_category_map(percentages)

    available, cooling = partition_pools(categorized)
    available_counts = {c: len(available[c]) for c in PRIORITY_ORDER}
    cooldown_counts = {c: len(cooling[c]) for c in PRIORITY_ORDER}
    allocation = compute_allocation(available_counts, batch_size, pct)

    selected: List[CategorizedTarget] = []
    seen: Set[str] = set()
    leftovers: Dict[Category, List[CategorizedTarget]] = {}
    for cat in PRIORITY_ORDER:
        pool = list(available[cat])
        rng.shuffle(pool)
        taken = 0
        rest: List[CategorizedTarget] = []
        for ct in pool:
            if taken < allocation[cat] and len(selected) < batch_size and ct.id not in seen:
                seen.add(ct.id)
                selected.append(ct)
                taken += 1
            else:
                rest.append(ct)
        leftovers[cat] = rest

    # Fallback fill, same priority order as the passes above.
    for cat in PRIORITY_ORDER:
        for ct in leftovers[cat]:
            if len(selected) >= batch_size:
                break
            if ct.id in seen:
                continue
            seen.add(ct.id)
            selected.append(ct)
            allocation[cat] += 1

    logger.info(
        "Batch allocation: %s | selected=%d/%d",
        ", ".join(f"{c.value}={allocation[c]}/{available_counts[c]}" for c in PRIORITY_ORDER),
        len(selected),
        batch_size,
    )
    return BatchSelection(
        allocation=allocation,
        selected=selected,
        available_counts=available_counts,
        cooldown_counts=cooldown_counts,
    )
