from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# ========== Environment & Logging helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_float(name: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = float(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

# parse CSV-ish envs into tuples (trim blanks)
def getenv_csv(name: str, default_csv: str) -> Tuple[str, ...]:
    raw = getenv_str(name, default_csv)
    parts = [x.strip() for x in raw.split(",")]
    return tuple(p for p in parts if p)

# ========== Exceptions ==========

class AuditError(Exception):
    """Base class for every failure raised inside one audit attempt."""

class AuditLaunchError(AuditError):
    """The auditing child process could not be started."""

class AuditTimeoutError(AuditError, TimeoutError):
    """The audit did not finish inside the hard wall-clock timeout."""

class AuditProcessError(AuditError):
    """The auditing process exited non-zero; message carries its stderr tail."""

    def __init__(self, message: str, *, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.returncode = returncode

class MalformedReportError(AuditError):
    """The audit finished but its report was missing or unparsable."""

class RegistryLoadError(Exception):
    """Target registry missing, unreadable or empty. Fatal for a run."""

# ========== Target helpers ==========

def normalize_target_url(target: str) -> str:
    """
    Scheme-qualified, host-only form of a target.

    >>> normalize_target_url("Example.com/some/path?q=1")
    'https://example.com'
    """
    raw = (target or "").strip()
    if not raw:
        raise ValueError("empty target")
    if "://" not in raw:
        raw = "https://" + raw
    parsed = urlparse(raw)
    scheme = parsed.scheme.lower() if parsed.scheme in ("http", "https") else "https"
    host = (parsed.hostname or "").lower()
    if not host:
        raise ValueError(f"target has no host: {target!r}")
    netloc = host
    if parsed.port and not (
        (scheme == "https" and parsed.port == 443) or (scheme == "http" and parsed.port == 80)
    ):
        netloc = f"{host}:{parsed.port}"
    return f"{scheme}://{netloc}"

def truncate_message(message: str, max_chars: int = 100) -> str:
    return (message or "")[:max(0, max_chars)]

def atomic_write_text(path: Path, data: str, encoding: str = "utf-8") -> None:
    """
    Write text atomically using a NamedTemporaryFile and os.replace on the same filesystem.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding=encoding, dir=str(path.parent), delete=False) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)
