# auditor/report.py
from __future__ import annotations

import json
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .utils import AuditProcessError, MalformedReportError


# ---------- Lighthouse report schema (only what we read) ----------
class CategoryScore(BaseModel):
    model_config = ConfigDict(extra="ignore")

    score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class LighthouseRuntimeError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: str = ""
    message: str = ""


class LighthouseReport(BaseModel):
    """
    Subset of the Lighthouse result (LHR). ``categories`` must be present;
    a report carrying ``runtimeError`` means Chrome loaded nothing useful.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    categories: Dict[str, CategoryScore]
    runtime_error: Optional[LighthouseRuntimeError] = Field(default=None, alias="runtimeError")


# ---------- Results ----------
@dataclass(frozen=True)
class ScoreSet:
    performance: int = 0
    accessibility: int = 0
    best_practices: int = 0
    seo: int = 0
    pwa: int = 0

    def is_zero(self) -> bool:
        return not any((self.performance, self.accessibility, self.best_practices, self.seo, self.pwa))

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class AuditResult:
    """
    Outcome of ``LighthouseRunner.run_audit``. A failure has the same shape
    as a success: all-zero scores, ``error=True`` and a truncated message.
    """
    scores: ScoreSet
    error: bool = False
    error_message: Optional[str] = None
    attempts: int = 1

    @property
    def failed(self) -> bool:
        return self.error

    @classmethod
    def failure(cls, message: str, *, attempts: int = 1) -> "AuditResult":
        return cls(scores=ScoreSet(), error=True, error_message=message, attempts=attempts)

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.scores.as_dict())
        out["error"] = self.error
        out["error_message"] = self.error_message
        out["attempts"] = self.attempts
        return out


def _pct(cat: Optional[CategoryScore]) -> int:
    if cat is None or cat.score is None:
        return 0
    return int(round(cat.score * 100))


def parse_report(raw: Union[str, bytes, Dict[str, Any], None]) -> ScoreSet:
    """
    Validate a Lighthouse JSON report and round each category to an integer
    percentage (0 when the category is absent or unscored).

    Raises MalformedReportError for anything that is not a usable report, and
    AuditProcessError when Lighthouse itself reported a runtime error.
    """
    if raw is None:
        raise MalformedReportError("Invalid Lighthouse result - empty report")
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise MalformedReportError(f"Invalid Lighthouse result - not JSON ({e})") from e
    else:
        data = raw
    if isinstance(data, dict) and isinstance(data.get("lhr"), dict):
        data = data["lhr"]
    if not isinstance(data, dict):
        raise MalformedReportError("Invalid Lighthouse result - not an object")

    try:
        report = LighthouseReport.model_validate(data)
    except ValidationError as e:
        raise MalformedReportError("Invalid Lighthouse result - missing categories data") from e

    if report.runtime_error is not None and report.runtime_error.code:
        rt = report.runtime_error
        raise AuditProcessError(f"{rt.code}: {rt.message}".strip())

    cats = report.categories
    return ScoreSet(
        performance=_pct(cats.get("performance")),
        accessibility=_pct(cats.get("accessibility")),
        best_practices=_pct(cats.get("best-practices")),
        seo=_pct(cats.get("seo")),
        pwa=_pct(cats.get("pwa")),
    )
