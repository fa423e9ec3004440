from __future__ import annotations

import argparse
import asyncio
import json
import logging
import random
import sqlite3
from pathlib import Path
from typing import List, Optional

from auditor.batch import BatchReport, BatchRunner, TargetOutcome
from auditor.config import Config, load_config
from auditor.runner import LighthouseRunner
from auditor.utils import RegistryLoadError, atomic_write_text
from components.allocator import BatchSelection, select_batch
from components.categorizer import PRIORITY_ORDER, CategoryPolicy, load_categorized
from components.registry import Target, load_targets
from extensions.logging import LoggingExtension
from extensions.outcome_store import OutcomeStore

logger = logging.getLogger("run_batch")


# ----------------------------
# CLI parsing
# ----------------------------

def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Pick a prioritized batch of domains and run Lighthouse against each one"
    )
    p.add_argument("--batch-size", type=int, default=None, help="Targets per run (default: BATCH_SIZE or 50)")
    p.add_argument("--registry", type=Path, default=None, help="Target registry (JSON or CSV)")
    p.add_argument("--db", type=Path, default=None, help="SQLite outcome store")
    p.add_argument("--limit", type=int, default=None, help="Only consider the first N registry targets")

    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--preview", action="store_true", help="Show availability and proposed allocation, then exit")
    mode.add_argument("--dry-run", action="store_true", help="Show the selected targets without auditing them")

    p.add_argument("--seed", type=int, default=None, help="Seed the shuffle for a reproducible selection")
    p.add_argument("--report-json", type=Path, default=None, help="Write the batch report to this JSON file")
    p.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return p.parse_args(argv)


def _open_store(path: Path) -> Optional[OutcomeStore]:
    try:
        return OutcomeStore(path)
    except (sqlite3.Error, OSError) as e:
        logger.error("Cannot open outcome store %s (%s); continuing without history", path, e)
        return None


def _log_selection(batch: BatchSelection, *, preview: bool) -> None:
    logger.info("Batch allocation summary:")
    for cat in PRIORITY_ORDER:
        count = batch.allocation.get(cat, 0)
        available = batch.available_counts.get(cat, 0)
        cooldown = batch.cooldown_counts.get(cat, 0)
        cooldown_text = f" ({cooldown} in cooldown)" if cooldown > 0 else ""
        if preview:
            logger.info("  %s: %d available%s -> %d proposed", cat.value, available, cooldown_text, count)
        else:
            logger.info("  %s: %d/%d domains%s", cat.value, count, available, cooldown_text)
    logger.info("Total selected: %d domains", len(batch.selected))


def _persist_callback(store: OutcomeStore):
    async def _on_result(outcome: TargetOutcome) -> None:
        target: Target = outcome.target.target
        if outcome.failed:
            await store.save_failure(target)
        else:
            await store.save_score(target, outcome.result.scores)
    return _on_result


def _write_report(path: Path, batch: BatchSelection, report: BatchReport) -> None:
    doc = {
        "allocation": {c.value: n for c, n in batch.allocation.items()},
        "available_counts": {c.value: n for c, n in batch.available_counts.items()},
        "cooldown_counts": {c.value: n for c, n in batch.cooldown_counts.items()},
        **report.as_dict(),
    }
    atomic_write_text(path, json.dumps(doc, indent=2, ensure_ascii=False))
    logger.info("Report written to %s", path)


# ----------------------------
# Main
# ----------------------------

async def main_async(argv: Optional[List[str]] = None, cfg: Optional[Config] = None) -> int:
    args = _parse_args(argv)
    cfg = cfg or load_config()

    level = getattr(logging, args.log_level)
    log_ext = LoggingExtension(cfg.log_file, global_level=level)

    store: Optional[OutcomeStore] = None
    try:
        try:
            targets = load_targets(args.registry or cfg.registry_path, limit=args.limit)
        except RegistryLoadError as e:
            logger.error("%s", e)
            return 2

        store = _open_store(args.db or cfg.outcome_db)
        categorized = await load_categorized(targets, store, policy=CategoryPolicy.from_config(cfg))

        batch_size = args.batch_size if args.batch_size and args.batch_size > 0 else cfg.batch_size
        rng = random.Random(args.seed) if args.seed is not None else None
        batch = select_batch(categorized, batch_size, cfg.percentages, rng=rng)
        _log_selection(batch, preview=args.preview)

        if args.preview:
            return 0
        if not batch.selected:
            logger.warning("No domains available for testing (all may be in cooldown)")
            return 0
        if args.dry_run:
            for i, ct in enumerate(batch.selected, 1):
                logger.info("%d. %s (%s, %s)", i, ct.id, ct.target.metadata.get("country", "-"), ct.category.value)
            return 0

        if store is None:
            logger.warning("Results will not be persisted: no outcome store")
        runner = BatchRunner(
            LighthouseRunner(cfg),
            inter_attempt_delay_s=cfg.inter_attempt_delay_s,
            error_message_max_chars=cfg.error_message_max_chars,
            on_result=_persist_callback(store) if store is not None else None,
            log_ext=log_ext,
        )
        report = await runner.run(batch.selected)

        for cat, stats in report.by_category().items():
            total = stats["success"] + stats["failed"]
            rate = 100.0 * stats["success"] / total if total else 0.0
            logger.info("  %s: %d/%d (%.1f%% success)", cat, stats["success"], total, rate)

        if args.report_json:
            _write_report(args.report_json, batch, report)
        return 0
    finally:
        if store is not None:
            store.close()
        log_ext.close()


# ----------------------------
# Entrypoint
# ----------------------------

def main() -> None:
    raise SystemExit(asyncio.run(main_async()))

if __name__ == "__main__":
    main()
