from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from extensions.retry_policy import classify_failure, retry_delay

from .config import Config
from .process import AuditProcess, LighthouseProcess
from .report import AuditResult, ScoreSet, parse_report
from .utils import (
    AuditError,
    AuditLaunchError,
    AuditTimeoutError,
    normalize_target_url,
    truncate_message,
)

logger = logging.getLogger(__name__)

ProcessFactory = Callable[[str], AuditProcess]
SleepFn = Callable[[float], Awaitable[None]]


class AttemptState(str, Enum):
    LAUNCHING = "launching"
    RUNNING = "running"
    TIMING_OUT = "timing_out"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CLEANUP = "cleanup"


def _is_retryable(exc: BaseException) -> bool:
    return classify_failure(exc).retryable


class LighthouseRunner:
    """
    Runs one bounded, retryable Lighthouse audit per call.

    Every attempt owns exactly one child process:
    LAUNCHING → RUNNING → (SUCCEEDED | TIMING_OUT → FAILED | FAILED) → CLEANUP.
    The child is terminated before a timeout is reported, and CLEANUP
    terminates whatever is left of its process tree on every exit path. ``run_audit`` never raises an ``Exception``;
    failures come back as an all-zero ``AuditResult`` with ``error=True``.
    """

    def __init__(
        self,
        cfg: Config,
        *,
        process_factory: Optional[ProcessFactory] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.cfg = cfg
        self.max_retries = cfg.max_retries
        self.audit_timeout_s = cfg.audit_timeout_s
        self.kill_grace_s = cfg.kill_grace_s
        self._process_factory: ProcessFactory = process_factory or (lambda url: LighthouseProcess(url, cfg))
        self._sleep = sleep

    # ---------------- public ----------------

    async def run_audit(self, target: str, retry_count: int = 0) -> AuditResult:
        try:
            url = normalize_target_url(target)
        except ValueError as e:
            logger.error("Cannot audit %r: %s", target, e)
            return AuditResult.failure(self._truncate(str(e)), attempts=0)

        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_retries - retry_count + 1)),
            wait=self._backoff,
            retry=retry_if_exception(_is_retryable),
            before_sleep=lambda rs: self._log_retry(url, rs, retry_count),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    scores = await self._attempt(url, retry_count + attempts)
        except Exception as e:
            event = classify_failure(e)
            message = str(e) or type(e).__name__
            logger.error(
                "Final failure for %s after %d attempt(s) [%s]: %s",
                url, retry_count + attempts, event.cls, message,
            )
            return AuditResult.failure(self._truncate(message), attempts=attempts)

        logger.info(
            "%s: P:%d%% A:%d%% BP:%d%% SEO:%d%% PWA:%d%%",
            url, scores.performance, scores.accessibility, scores.best_practices, scores.seo, scores.pwa,
        )
        return AuditResult(scores=scores, attempts=attempts)

    # ---------------- one attempt ----------------

    async def _attempt(self, url: str, attempt_no: int) -> ScoreSet:
        state = AttemptState.LAUNCHING
        self._trace(url, attempt_no, state)
        proc = None
        try:
            try:
                proc = self._process_factory(url)
                await proc.start()
            except AuditLaunchError:
                raise
            except Exception as e:
                raise AuditLaunchError(f"Failed to launch Lighthouse: {e}") from e

            state = AttemptState.RUNNING
            self._trace(url, attempt_no, state, pid=proc.pid)
            try:
                raw = await asyncio.wait_for(proc.collect(), timeout=self.audit_timeout_s)
            except asyncio.TimeoutError:
                state = AttemptState.TIMING_OUT
                self._trace(url, attempt_no, state, pid=proc.pid)
                await self._terminate(proc, url)
                raise AuditTimeoutError(
                    f"Lighthouse audit timeout after {int(self.audit_timeout_s * 1000)}ms"
                ) from None

            scores = parse_report(raw)
            state = AttemptState.SUCCEEDED
            self._trace(url, attempt_no, state)
            return scores
        except Exception as e:
            state = AttemptState.FAILED
            self._trace(url, attempt_no, state, error=e)
            raise
        finally:
            self._trace(url, attempt_no, AttemptState.CLEANUP)
            # unconditional: chrome can outlive a lighthouse that already exited
            if proc is not None:
                await self._terminate(proc, url)

    async def _terminate(self, proc: AuditProcess, url: str) -> None:
        try:
            await proc.terminate(self.kill_grace_s)
        except Exception as e:
            logger.warning("Error terminating Lighthouse for %s (pid=%s): %s", url, proc.pid, e)

    # ---------------- retry plumbing ----------------

    def _backoff(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if exc is None:
            return self.cfg.retry_base_delay_s
        return retry_delay(
            classify_failure(exc),
            base_delay_s=self.cfg.retry_base_delay_s,
            closed_mult=self.cfg.retry_closed_mult,
            network_mult=self.cfg.retry_network_mult,
        )

    def _log_retry(self, url: str, retry_state: RetryCallState, retry_count: int) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        attempt = retry_count + retry_state.attempt_number
        logger.warning(
            "Error auditing %s (attempt %d): %s. Retrying in %.1fs (attempt %d/%d)",
            url, attempt, exc, delay, attempt + 1, self.max_retries + 1,
        )

    def _truncate(self, message: str) -> str:
        return truncate_message(message, self.cfg.error_message_max_chars)

    @staticmethod
    def _trace(url: str, attempt_no: int, state: AttemptState, *, pid=None, error: Optional[BaseException] = None) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        if error is not None:
            kind = "audit" if isinstance(error, AuditError) else type(error).__name__
            logger.debug("[audit] %s attempt=%d state=%s error(%s)=%s", url, attempt_no, state.value, kind, error)
        else:
            logger.debug("[audit] %s attempt=%d state=%s pid=%s", url, attempt_no, state.value, pid)
