from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Tuple
from .utils import getenv_int, getenv_str, getenv_float, getenv_csv

# ---------- Project Paths ----------
PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
DATA_DIR: Path = PROJECT_ROOT / "data"
LOG_DIR: Path = PROJECT_ROOT / "logs"

# Files (paths only; nothing is created at import time)
OUTCOME_DB: Path = DATA_DIR / "lighthouse_scores.db"
REGISTRY_PATH: Path = DATA_DIR / "domains.json"
LOG_FILE: Path = LOG_DIR / "lighthouse_batch.log"

# Category keys in scheduling priority order
CATEGORY_KEYS: Tuple[str, ...] = (
    "never_tested",
    "reliable_success",
    "recent_mixed",
    "old_success",
    "failed_only",
)

DEFAULT_PERCENTAGES = "never_tested:70,reliable_success:10,recent_mixed:10,old_success:5,failed_only:5"

DEFAULT_CHROME_FLAGS = "--headless,--disable-gpu,--no-sandbox,--disable-setuid-sandbox,--disable-dev-shm-usage"

LIGHTHOUSE_CATEGORIES: Tuple[str, ...] = (
    "performance",
    "accessibility",
    "best-practices",
    "seo",
    "pwa",
)


def parse_percentages(items: Tuple[str, ...]) -> Dict[str, int]:
    """
    Parse ``("never_tested:70", ...)`` into a mapping. Unknown keys and
    malformed entries are ignored; missing categories get 0.
    """
    out = {k: 0 for k in CATEGORY_KEYS}
    for item in items:
        key, sep, value = item.partition(":")
        key = key.strip().lower()
        if not sep or key not in out:
            continue
        try:
            out[key] = max(0, int(value.strip()))
        except ValueError:
            continue
    return out


def _parse_windows(items: Tuple[str, ...], default: Tuple[int, ...]) -> Tuple[int, ...]:
    try:
        vals = tuple(sorted(int(x) for x in items))
    except ValueError:
        return default
    if not vals or vals[0] <= 0:
        return default
    return vals


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    # Batch selection
    batch_size: int
    percentages: Dict[str, int]

    # Category policy
    reliable_min_successes: int
    reliable_window_days: int
    recent_window_days: int
    failed_only_after_days: int
    cooldown_windows_days: Tuple[int, ...]  # e.g. (1, 3, 7)

    # Audit execution
    audit_timeout_s: float
    max_retries: int
    retry_base_delay_s: float
    retry_closed_mult: float                # target/session closed: give the process time to release
    retry_network_mult: float               # connection / DNS failures
    kill_grace_s: float                     # SIGTERM → SIGKILL escalation window
    inter_attempt_delay_s: float            # pacing between targets in a batch
    error_message_max_chars: int

    # Lighthouse CLI
    lighthouse_bin: str
    chrome_flags: Tuple[str, ...]
    categories: Tuple[str, ...]

    # Paths
    project_root: Path
    data_dir: Path
    outcome_db: Path
    registry_path: Path
    log_file: Path


# ---------- Loader ----------
def load_config() -> Config:

    cfg = Config(
        batch_size=getenv_int("BATCH_SIZE", 50, 1, 10_000),
        percentages=parse_percentages(getenv_csv("BATCH_PERCENTAGES", DEFAULT_PERCENTAGES)),

        reliable_min_successes=getenv_int("RELIABLE_MIN_SUCCESSES", 3, 1, 1000),
        reliable_window_days=getenv_int("RELIABLE_WINDOW_DAYS", 7, 1, 365),
        recent_window_days=getenv_int("RECENT_WINDOW_DAYS", 14, 1, 365),
        failed_only_after_days=getenv_int("FAILED_ONLY_AFTER_DAYS", 30, 1, 3650),
        cooldown_windows_days=_parse_windows(getenv_csv("COOLDOWN_WINDOWS_DAYS", "1,3,7"), (1, 3, 7)),

        # Lighthouse on a slow site regularly takes 20-40s; 60s is the hard ceiling.
        audit_timeout_s=getenv_float("AUDIT_TIMEOUT_S", 60.0, 5.0, 600.0),
        max_retries=getenv_int("AUDIT_MAX_RETRIES", 2, 0, 10),
        retry_base_delay_s=getenv_float("RETRY_BASE_DELAY_S", 3.0, 0.0, 120.0),
        retry_closed_mult=getenv_float("RETRY_CLOSED_MULT", 3.0, 1.0, 20.0),
        retry_network_mult=getenv_float("RETRY_NETWORK_MULT", 4.0, 1.0, 20.0),
        kill_grace_s=getenv_float("KILL_GRACE_S", 5.0, 0.1, 60.0),
        inter_attempt_delay_s=getenv_float("INTER_ATTEMPT_DELAY_S", 1.0, 0.0, 60.0),
        error_message_max_chars=getenv_int("ERROR_MESSAGE_MAX_CHARS", 100, 10, 4000),

        lighthouse_bin=getenv_str("LIGHTHOUSE_BIN", "lighthouse"),
        chrome_flags=getenv_csv("LIGHTHOUSE_CHROME_FLAGS", DEFAULT_CHROME_FLAGS),
        categories=LIGHTHOUSE_CATEGORIES,

        project_root=PROJECT_ROOT,
        data_dir=DATA_DIR,
        outcome_db=Path(getenv_str("OUTCOME_DB", str(OUTCOME_DB))),
        registry_path=Path(getenv_str("REGISTRY_PATH", str(REGISTRY_PATH))),
        log_file=Path(getenv_str("LOG_FILE", str(LOG_FILE))),
    )
    return cfg
