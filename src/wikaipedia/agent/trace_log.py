"""Append-only JSONL decision trace, one row per abstain or answer attempt."""

from __future__ import annotations

import json
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..platform_client import normalize_str


MAX_TEXT_CHARS = 400
MAX_BODY_CHARS = 5000
MAX_LIST_ITEMS = 20
BODY_KEY_MARKERS = ("content", "answer")


def _text_limit(key: str) -> int:
    lower = key.lower()
    return MAX_BODY_CHARS if any(marker in lower for marker in BODY_KEY_MARKERS) else MAX_TEXT_CHARS


def _clean(value: Any, limit: int) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, dict):
        return _clean_payload(value)
    if isinstance(value, (list, tuple)):
        return [_clean(item, MAX_TEXT_CHARS) for item in list(value)[:MAX_LIST_ITEMS]]
    return normalize_str(value).strip()[:limit].rstrip()


def _clean_payload(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    out: Dict[str, Any] = {}
    for raw_key, raw_value in payload.items():
        key = normalize_str(raw_key).strip()
        if key:
            out[key] = _clean(raw_value, _text_limit(key))
    return out


def append_trace(path: Path, event: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": normalize_str(event).strip().lower(),
    }
    row.update(_clean_payload(payload))
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(row, ensure_ascii=True) + "\n")
    return row


def read_trace(path: Path, limit: int = 50, event: Optional[str] = None) -> List[Dict[str, Any]]:
    """Last ``limit`` rows, optionally only those of one event; unreadable lines are skipped."""
    if not path.exists():
        return []
    wanted = normalize_str(event).strip().lower()
    rows: deque = deque(maxlen=max(1, int(limit)))
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            try:
                row = json.loads(line)
            except ValueError:
                continue
            if not isinstance(row, dict):
                continue
            if wanted and normalize_str(row.get("event")).strip().lower() != wanted:
                continue
            rows.append(row)
    return list(rows)
