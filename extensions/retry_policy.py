from __future__ import annotations

import asyncio
from dataclasses import dataclass

from auditor.utils import (
    AuditLaunchError,
    AuditTimeoutError,
    MalformedReportError,
)

RetryClass = str  # "closed" | "network" | "generic" | "terminal"

# Process / session died under us. The browser needs longer to release its
# profile dir and debugging port before a relaunch works.
_CLOSED_NEEDLES = (
    "targetcloseerror",
    "target closed",
    "session closed",
    "browser has been closed",
    "target page, context or browser has been closed",
    "page crashed",
    "connection closed while reading from the driver",
)

_NETWORK_NEEDLES = (
    "connection refused",
    "econnrefused",
    "connection reset",
    "econnreset",
    "enotfound",
    "err_name_not_resolved",
    "err_connection",
    "err_internet_disconnected",
    "dns_failure",
    "dns servers could not resolve",
    "name or service not known",
    "temporary failure in name resolution",
    "network is unreachable",
    "no route to host",
    "network error",
)

_GENERIC_NEEDLES = (
    "protocol error",
    "navigation timeout",
    "timeout",
    "timed out",
)


@dataclass(frozen=True, slots=True)
class RetryEvent:
    cls: RetryClass
    error: str

    @property
    def retryable(self) -> bool:
        return self.cls != "terminal"


def _haystack(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}".lower()


def classify_failure(exc: BaseException) -> RetryEvent:
    """
    Map an attempt failure onto the retry vocabulary:
      - closed:   target/session/browser closed, page crashed
      - network:  connection refused/reset, DNS / name resolution
      - generic:  timeouts, protocol errors, launch failures
      - terminal: malformed report or anything not in the vocabulary
    """
    error = str(exc)

    if isinstance(exc, MalformedReportError):
        return RetryEvent(cls="terminal", error=error)

    low = _haystack(exc)
    if any(n in low for n in _CLOSED_NEEDLES):
        return RetryEvent(cls="closed", error=error)
    if any(n in low for n in _NETWORK_NEEDLES):
        return RetryEvent(cls="network", error=error)

    if isinstance(exc, (AuditTimeoutError, asyncio.TimeoutError, AuditLaunchError)):
        return RetryEvent(cls="generic", error=error)
    if any(n in low for n in _GENERIC_NEEDLES):
        return RetryEvent(cls="generic", error=error)

    return RetryEvent(cls="terminal", error=error)


def retry_delay(
    event: RetryEvent,
    *,
    base_delay_s: float,
    closed_mult: float = 3.0,
    network_mult: float = 4.0,
) -> float:
    if event.cls == "closed":
        return base_delay_s * closed_mult
    if event.cls == "network":
        return base_delay_s * network_mult
    return base_delay_s
