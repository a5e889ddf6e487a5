from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from ..platform_client import normalize_str
from .topics import normalize_topics


SEEN_CAPACITY = 5000
HISTORY_CAPACITY = 1000

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"

logger = logging.getLogger("wikaipedia.agent")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def _coerce_count(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def _empty_stats() -> Dict[str, int]:
    return {"win": 0, "loss": 0, "seen": 0}


class MemoryStore:
    """Durable per-agent learning state, persisted as a single JSON record."""

    def __init__(
        self,
        path: Path,
        seen_capacity: int = SEEN_CAPACITY,
        history_capacity: int = HISTORY_CAPACITY,
    ):
        self.path = Path(path)
        self.seen_capacity = seen_capacity
        self.history_capacity = history_capacity
        self.seen_question_ids: List[str] = []
        self._seen_index: Set[str] = set()
        self.topic_performance: Dict[str, Dict[str, int]] = {}
        self.history: List[Dict[str, Any]] = []
        self.last_loop_at = ""
        self.loops = 0

    def load(self) -> "MemoryStore":
        if not self.path.exists():
            return self
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Memory load failed path=%s error=%s; starting empty.", self.path, e)
            return self
        if not isinstance(data, dict):
            logger.warning("Memory file is not an object path=%s; starting empty.", self.path)
            return self

        seen = data.get("seenQuestionIds")
        if isinstance(seen, list):
            for item in seen:
                self.mark_seen(item)
        performance = data.get("topicPerformance")
        if isinstance(performance, dict):
            for topic, stats in performance.items():
                if not isinstance(stats, dict):
                    continue
                self.topic_performance[normalize_str(topic)] = {
                    "win": _coerce_count(stats.get("win")),
                    "loss": _coerce_count(stats.get("loss")),
                    "seen": _coerce_count(stats.get("seen")),
                }
        history = data.get("history")
        if isinstance(history, list):
            self.history = [item for item in history if isinstance(item, dict)][-self.history_capacity :]
        self.last_loop_at = normalize_str(data.get("lastLoopAt"))
        self.loops = _coerce_count(data.get("loops"))
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seenQuestionIds": list(self.seen_question_ids),
            "topicPerformance": {topic: dict(stats) for topic, stats in self.topic_performance.items()},
            "history": list(self.history),
            "lastLoopAt": self.last_loop_at,
            "loops": self.loops,
        }

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def begin_loop(self) -> int:
        self.loops += 1
        self.last_loop_at = utc_now_iso()
        return self.loops

    def mark_seen(self, question_id: Any) -> None:
        qid = normalize_str(question_id).strip()
        if not qid or qid in self._seen_index:
            return
        self.seen_question_ids.append(qid)
        self._seen_index.add(qid)
        overflow = len(self.seen_question_ids) - self.seen_capacity
        if overflow > 0:
            for evicted in self.seen_question_ids[:overflow]:
                self._seen_index.discard(evicted)
            del self.seen_question_ids[:overflow]

    def has_seen(self, question_id: Any) -> bool:
        return normalize_str(question_id).strip() in self._seen_index

    def record_outcome(self, topics: Iterable[str], outcome: str) -> None:
        if outcome not in {OUTCOME_SUCCESS, OUTCOME_FAILURE}:
            raise ValueError(f"outcome must be 'success' or 'failure', got {outcome!r}")
        for topic in normalize_topics(list(topics)):
            stats = self.topic_performance.setdefault(topic, _empty_stats())
            stats["seen"] += 1
            if outcome == OUTCOME_SUCCESS:
                stats["win"] += 1
            else:
                stats["loss"] += 1

    def topic_prior(self, topics: Iterable[str]) -> float:
        resolved = normalize_topics(list(topics))
        total = 0.0
        for topic in resolved:
            stats = self.topic_performance.get(topic, _empty_stats())
            seen = max(1, stats.get("seen", 0))
            net = stats.get("win", 0) - stats.get("loss", 0)
            total += clamp(net / seen, -1.0, 1.0)
        return total / len(resolved)

    def append_history(self, entry: Dict[str, Any]) -> None:
        row = dict(entry)
        row.setdefault("ts", utc_now_iso())
        self.history.append(row)
        overflow = len(self.history) - self.history_capacity
        if overflow > 0:
            del self.history[:overflow]

    def summary(self, history_limit: int = 10) -> Dict[str, Any]:
        priors = {topic: round(self.topic_prior([topic]), 4) for topic in sorted(self.topic_performance)}
        return {
            "path": str(self.path),
            "loops": self.loops,
            "lastLoopAt": self.last_loop_at,
            "seen": len(self.seen_question_ids),
            "historyEntries": len(self.history),
            "topicPerformance": {topic: dict(self.topic_performance[topic]) for topic in sorted(self.topic_performance)},
            "topicPriors": priors,
            "recentHistory": self.history[-max(0, int(history_limit)) :] if history_limit else [],
        }


def load_memory(path: Path) -> MemoryStore:
    return MemoryStore(path).load()


def last_action(memory: MemoryStore, question_id: str) -> Optional[Dict[str, Any]]:
    qid = normalize_str(question_id).strip()
    for entry in reversed(memory.history):
        if normalize_str(entry.get("questionId")).strip() == qid:
            return entry
    return None
