from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from auditor.utils import RegistryLoadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Target:
    id: str                                                  # the domain
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


def _clean_domain(raw: Any) -> str:
    return str(raw or "").strip().lower()


def _iter_json_records(data: Any) -> Iterable[Target]:
    """
    Accepted layouts:
      [{"country": "US", "top_domains": ["a.com", ...]}, ...]
      {"US": ["a.com", ...], ...}
      [{"domain": "a.com", "country": "US", ...}, ...]   (``url`` also accepted)
      ["a.com", "b.com"]
    """
    if isinstance(data, dict):
        for group, domains in data.items():
            for d in domains or []:
                yield Target(id=_clean_domain(d), metadata={"country": group})
        return

    if not isinstance(data, list):
        raise RegistryLoadError(f"Unsupported registry layout: {type(data).__name__}")

    for item in data:
        if isinstance(item, str):
            yield Target(id=_clean_domain(item))
        elif isinstance(item, dict) and "top_domains" in item:
            meta = {k: v for k, v in item.items() if k != "top_domains"}
            for d in item.get("top_domains") or []:
                yield Target(id=_clean_domain(d), metadata=dict(meta))
        elif isinstance(item, dict):
            key = "domain" if "domain" in item else "url"
            meta = {k: v for k, v in item.items() if k != key}
            yield Target(id=_clean_domain(item.get(key)), metadata=meta)


def _iter_csv_records(path: Path, *, encoding: str = "utf-8") -> Iterable[Target]:
    with path.open("r", encoding=encoding, newline="") as f:
        reader = csv.DictReader(f)
        fields = reader.fieldnames or []
        key = "domain" if "domain" in fields else ("url" if "url" in fields else None)
        if key is None:
            raise RegistryLoadError(f"{path}: CSV needs a 'domain' or 'url' column")
        for row in reader:
            metadata = {k: v for k, v in row.items() if k != key}
            yield Target(id=_clean_domain(row.get(key)), metadata=metadata)


def _dedupe_targets(records: Iterable[Target]) -> List[Target]:
    seen: Set[str] = set()
    out: List[Target] = []
    for r in records:
        if not r.id or r.id in seen:
            continue
        seen.add(r.id)
        out.append(r)
    return out


def load_targets(path: Path, *, encoding: str = "utf-8", limit: Optional[int] = None) -> List[Target]:
    """
    Load the target registry from a JSON or CSV file.

    Domains are lower-cased and de-duplicated (first occurrence wins); every
    other field is carried through as opaque metadata.

    Raises:
        RegistryLoadError: the file is missing, unreadable, malformed or holds
            no targets. There is nothing to schedule in that case.
    """
    path = Path(path)
    if not path.is_file():
        raise RegistryLoadError(f"Target registry not found: {path}")

    try:
        if path.suffix.lower() == ".csv":
            targets = _dedupe_targets(_iter_csv_records(path, encoding=encoding))
        else:
            data = json.loads(path.read_text(encoding=encoding))
            targets = _dedupe_targets(_iter_json_records(data))
    except RegistryLoadError:
        raise
    except (OSError, ValueError, UnicodeDecodeError) as e:
        raise RegistryLoadError(f"Cannot read target registry {path}: {e}") from e

    if limit is not None and limit > 0:
        targets = targets[:limit]
    if not targets:
        raise RegistryLoadError(f"Target registry {path} holds no targets")

    logger.info("Loaded %d targets from %s", len(targets), path)
    return targets
