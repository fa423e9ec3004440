from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from components.categorizer import CategorizedTarget

from .report import AuditResult
from .utils import truncate_message

logger = logging.getLogger(__name__)


class AuditEngine(Protocol):
    async def run_audit(self, target: str, retry_count: int = 0) -> AuditResult: ...


@dataclass(frozen=True)
class TargetOutcome:
    target: CategorizedTarget
    result: AuditResult

    @property
    def failed(self) -> bool:
        return self.result.error

    def as_dict(self) -> Dict[str, Any]:
        return {
            "url": self.target.id,
            "category": self.target.category.value,
            "metadata": dict(self.target.target.metadata),
            **self.result.as_dict(),
        }


@dataclass
class BatchReport:
    outcomes: List[TargetOutcome] = field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def success_rate(self) -> float:
        return (self.success_count / self.total) if self.total else 0.0

    def by_category(self) -> Dict[str, Dict[str, int]]:
        out: Dict[str, Dict[str, int]] = {}
        for o in self.outcomes:
            stats = out.setdefault(o.target.category.value, {"success": 0, "failed": 0})
            stats["failed" if o.failed else "success"] += 1
        return out

    def failed_ids(self) -> List[str]:
        return [o.target.id for o in self.outcomes if o.failed]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": round(self.success_rate, 4),
            "by_category": self.by_category(),
            "results": [o.as_dict() for o in self.outcomes],
        }


ResultCallback = Callable[[TargetOutcome], Awaitable[None]]


class BatchRunner:
    """
    Audits a selection strictly one target at a time, pausing
    ``inter_attempt_delay_s`` between targets. One target failing (even with
    an unexpected exception) never stops the loop.
    """

    def __init__(
        self,
        engine: AuditEngine,
        *,
        inter_attempt_delay_s: float = 1.0,
        error_message_max_chars: int = 100,
        on_result: Optional[ResultCallback] = None,
        log_ext=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.engine = engine
        self.inter_attempt_delay_s = inter_attempt_delay_s
        self.error_message_max_chars = error_message_max_chars
        self.on_result = on_result
        self.log_ext = log_ext
        self._sleep = sleep

    async def run(self, selected: Sequence[CategorizedTarget]) -> BatchReport:
        report = BatchReport()
        n = len(selected)
        for i, ct in enumerate(selected):
            token = self.log_ext.set_target_context(ct.id) if self.log_ext else None
            try:
                logger.info("[%d/%d] Testing %s (%s)...", i + 1, n, ct.id, ct.category.value)
                outcome = TargetOutcome(target=ct, result=await self._audit_one(ct))
                report.outcomes.append(outcome)
                if outcome.failed:
                    report.failure_count += 1
                    logger.info("   Failed: %s", outcome.result.error_message or "Unknown error")
                else:
                    report.success_count += 1
                    s = outcome.result.scores
                    logger.info("   Success: P:%d%% A:%d%% SEO:%d%%", s.performance, s.accessibility, s.seo)
                await self._notify(outcome)
            finally:
                if token is not None:
                    self.log_ext.reset_target_context(token)

            if i < n - 1 and self.inter_attempt_delay_s > 0:
                await self._sleep(self.inter_attempt_delay_s)

        logger.info(
            "Batch complete: %d successful, %d failed, %d total (%.1f%% success)",
            report.success_count, report.failure_count, report.total, 100.0 * report.success_rate,
        )
        if report.failure_count:
            logger.info("Failed targets: %s", ", ".join(report.failed_ids()))
        return report

    async def _audit_one(self, ct: CategorizedTarget) -> AuditResult:
        try:
            return await self.engine.run_audit(ct.id)
        except Exception as e:
            logger.exception("Audit engine raised for %s", ct.id)
            return AuditResult.failure(truncate_message(str(e) or type(e).__name__, self.error_message_max_chars))

    async def _notify(self, outcome: TargetOutcome) -> None:
        if self.on_result is None:
            return
        try:
            await self.on_result(outcome)
        except Exception as e:
            logger.error("Result callback failed for %s: %s", outcome.target.id, e)
