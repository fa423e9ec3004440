from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from auditor.report import ScoreSet
from components.categorizer import TargetHistory
from components.registry import Target

logger = logging.getLogger(__name__)

# Same text layout as SQLite's CURRENT_TIMESTAMP so MAX() over mixed rows sorts correctly.
_TS_FORMAT = "%Y-%m-%d %H:%M:%S"


def _format_ts(ts: Optional[datetime]) -> str:
    ts = ts or datetime.now(timezone.utc)
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.strftime(_TS_FORMAT)


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(str(raw))
    except ValueError:
        logger.debug("Unparsable timestamp in outcome store: %r", raw)
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class FailureStats:
    url: str
    failure_count: int
    first_failure: Optional[datetime]
    last_failure: Optional[datetime]


@dataclass(frozen=True)
class _Stmt:
    sql: str
    args: Tuple[Any, ...] = tuple()


_ATTEMPT_STATS_SQL = """
    SELECT url,
           COUNT(*) AS total_attempts,
           SUM(success) AS success_count,
           MAX(CASE WHEN success = 1 THEN ts END) AS last_success,
           MAX(CASE WHEN success = 0 THEN ts END) AS last_failure
    FROM (
        SELECT url, test_date AS ts, 1 AS success FROM lighthouse_scores
        UNION ALL
        SELECT url, failure_timestamp AS ts, 0 AS success FROM lighthouse_failed_tests
    )
    GROUP BY url
"""


class OutcomeStore:
    """
    SQLite history of audit attempts.

      - lighthouse_scores:       one row per successful audit
      - lighthouse_failed_tests: one row per failed audit

    The scheduler only reads ``fetch_attempt_stats``; the caller writes
    results back after each audit.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path).resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = self._connect(self.db_path)
        self._init_schema()

    # -------------------- connection / schema --------------------

    def _connect(self, path: Path) -> sqlite3.Connection:
        conn = sqlite3.connect(
            path,
            check_same_thread=False,
            isolation_level=None,
            timeout=5.0,
        )
        conn.row_factory = sqlite3.Row
        with suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        with suppress(sqlite3.Error):
            conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _ensure_score_columns_locked(self) -> None:
        rows = self._conn.execute("PRAGMA table_info(lighthouse_scores)").fetchall()
        cols = {r["name"] for r in rows}
        # older databases predate the industry column
        if "industry" not in cols:
            self._conn.execute("ALTER TABLE lighthouse_scores ADD COLUMN industry TEXT")

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS lighthouse_scores (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT NOT NULL,
                    country TEXT NOT NULL,
                    industry TEXT,
                    performance INTEGER,
                    accessibility INTEGER,
                    best_practices INTEGER,
                    seo INTEGER,
                    pwa INTEGER,
                    test_date DATETIME DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS lighthouse_failed_tests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT NOT NULL,
                    failure_timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_scores_url ON lighthouse_scores(url)")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_failed_url ON lighthouse_failed_tests(url)")
            self._ensure_score_columns_locked()

    def close(self) -> None:
        with suppress(sqlite3.Error):
            with self._lock:
                self._conn.close()

    # -------------------- basic async db helpers --------------------

    async def _exec(self, stmt: _Stmt) -> Optional[int]:
        def _run() -> Optional[int]:
            with self._lock:
                return self._conn.execute(stmt.sql, stmt.args).lastrowid

        return await asyncio.to_thread(_run)

    async def _query_all(self, sql: str, args: Tuple[Any, ...] = ()) -> List[sqlite3.Row]:
        def _run() -> List[sqlite3.Row]:
            with self._lock:
                return self._conn.execute(sql, args).fetchall()

        return await asyncio.to_thread(_run)

    # -------------------- reads --------------------

    async def fetch_attempt_stats(self) -> Dict[str, TargetHistory]:
        rows = await self._query_all(_ATTEMPT_STATS_SQL)
        return {
            row["url"]: TargetHistory(
                total_attempts=int(row["total_attempts"] or 0),
                success_count=int(row["success_count"] or 0),
                last_success=_parse_ts(row["last_success"]),
                last_failure=_parse_ts(row["last_failure"]),
            )
            for row in rows
        }

    async def failed_tests_stats(self) -> List[FailureStats]:
        rows = await self._query_all(
            """
            SELECT url, COUNT(*) AS failure_count,
                   MAX(failure_timestamp) AS last_failure,
                   MIN(failure_timestamp) AS first_failure
            FROM lighthouse_failed_tests
            GROUP BY url
            ORDER BY failure_count DESC, last_failure DESC
            """
        )
        return [
            FailureStats(
                url=row["url"],
                failure_count=int(row["failure_count"] or 0),
                first_failure=_parse_ts(row["first_failure"]),
                last_failure=_parse_ts(row["last_failure"]),
            )
            for row in rows
        ]

    # -------------------- writes (caller-owned) --------------------

    async def save_score(self, target: Target, scores: ScoreSet, *, at: Optional[datetime] = None) -> Optional[int]:
        """
        Record a successful audit. An all-zero score set means the audit
        produced nothing, so it is stored as a failure instead and None returned.
        """
        if scores.is_zero():
            logger.warning("Test failed for %s - recording failure and skipping save", target.id)
            await self.save_failure(target, at=at)
            return None
        return await self._exec(
            _Stmt(
                """
                INSERT INTO lighthouse_scores
                (url, country, industry, performance, accessibility, best_practices, seo, pwa, test_date)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    target.id,
                    str(target.metadata.get("country") or ""),
                    target.metadata.get("industry"),
                    scores.performance,
                    scores.accessibility,
                    scores.best_practices,
                    scores.seo,
                    scores.pwa,
                    _format_ts(at),
                ),
            )
        )

    async def save_failure(self, target: Target, *, at: Optional[datetime] = None) -> Optional[int]:
        return await self._exec(
            _Stmt(
                "INSERT INTO lighthouse_failed_tests (url, failure_timestamp) VALUES (?, ?)",
                (target.id, _format_ts(at)),
            )
        )
