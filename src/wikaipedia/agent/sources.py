from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..platform_client import AppClient, PlatformClient, normalize_str
from .memory import MemoryStore


EVENT_SESSION_READY = "session.ready"
EVENT_QUESTION_CREATED = "question.created"

logger = logging.getLogger("wikaipedia.agent")


@dataclass
class Candidate:
    question_id: str
    header: str = ""
    content: str = ""
    topic: str = ""
    created_at: str = ""
    answers_close_at: str = ""
    source: str = "pull"
    raw: Dict[str, Any] = field(default_factory=dict)

    def as_question(self) -> Dict[str, Any]:
        question = dict(self.raw)
        question.update(
            {
                "id": self.question_id,
                "header": self.header,
                "content": self.content,
                "createdAt": self.created_at,
                "answersCloseAt": self.answers_close_at,
            }
        )
        if self.topic:
            question["wikiId"] = self.topic
        return question


def parse_timestamp(value: Any) -> Optional[float]:
    if isinstance(value, (int, float)):
        return float(value)
    text = normalize_str(value).strip()
    if not text:
        return None
    try:
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def is_closed(question: Dict[str, Any], now_ts: Optional[float] = None) -> bool:
    close_ts = parse_timestamp(question.get("answersCloseAt") or question.get("closesAt"))
    if close_ts is None:
        return False
    current = now_ts if now_ts is not None else datetime.now(timezone.utc).timestamp()
    return close_ts <= current


def candidate_from_payload(payload: Dict[str, Any], source: str) -> Optional[Candidate]:
    qid = normalize_str(payload.get("postId") or payload.get("id") or payload.get("questionId")).strip()
    if not qid:
        return None
    topic = payload.get("wikiId") or payload.get("wiki") or ""
    if isinstance(topic, dict):
        topic = topic.get("id") or ""
    return Candidate(
        question_id=qid,
        header=normalize_str(payload.get("header")).strip(),
        content=normalize_str(payload.get("content")).strip(),
        topic=normalize_str(topic).strip().lower(),
        created_at=normalize_str(payload.get("createdAt") or payload.get("timestamp")).strip(),
        answers_close_at=normalize_str(payload.get("answersCloseAt")).strip(),
        source=source,
        raw=dict(payload),
    )


def extract_questions(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if not isinstance(payload, dict):
        return []
    for key in ("questions", "posts", "data", "items"):
        value = payload.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    return []


def iter_event_frames(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """Group stream lines into blank-line separated frames and decode them.

    Each ``data:`` line of a frame is parsed as a JSON object. Frames that do
    not decode are logged and skipped.
    """
    buffer: List[str] = []

    def _flush() -> Iterator[Dict[str, Any]]:
        for line in buffer:
            if not line.startswith("data:"):
                continue
            body = line[5:].strip()
            if not body:
                continue
            try:
                payload = json.loads(body)
            except ValueError as e:
                logger.warning("Skipping malformed event frame error=%s body=%r", e, body[:200])
                continue
            if not isinstance(payload, dict):
                logger.warning("Skipping non-object event frame body=%r", body[:200])
                continue
            yield payload

    for raw_line in lines:
        line = normalize_str(raw_line).rstrip("\r")
        if line == "":
            if buffer:
                yield from _flush()
                buffer = []
            continue
        buffer.append(line)
    if buffer:
        yield from _flush()


def event_type(payload: Dict[str, Any]) -> str:
    return normalize_str(payload.get("type") or payload.get("eventType")).strip().lower()


def iter_stream_candidates(frames: Iterable[Dict[str, Any]]) -> Iterator[Candidate]:
    for payload in frames:
        kind = event_type(payload)
        if kind == EVENT_SESSION_READY:
            logger.info("Session ready agent=%s", normalize_str(payload.get("agentName")) or "(unknown)")
            continue
        if kind != EVENT_QUESTION_CREATED:
            logger.debug("Ignoring event type=%s", kind or "(none)")
            continue
        candidate = candidate_from_payload(payload, source="push")
        if candidate is None:
            logger.warning("Skipping question event without id payload_keys=%s", sorted(payload.keys()))
            continue
        yield candidate


def should_scan(scan_probability: float, rng: random.Random) -> bool:
    return rng.random() < scan_probability


def fetch_pull_candidates(
    client: PlatformClient,
    memory: MemoryStore,
    limit: int,
    rng: random.Random,
    max_new: Optional[int] = None,
) -> List[Candidate]:
    """List open questions, shuffle them and keep the unseen ones, up to ``max_new`` when given."""
    payload = client.list_open_questions(limit=limit)
    questions = extract_questions(payload)
    rng.shuffle(questions)
    out: List[Candidate] = []
    for item in questions:
        if max_new is not None and len(out) >= max(0, int(max_new)):
            break
        candidate = candidate_from_payload(item, source="pull")
        if candidate is None or memory.has_seen(candidate.question_id):
            continue
        out.append(candidate)
    return out


def backfill_candidates(app_client: AppClient) -> List[Candidate]:
    payload = app_client.list_posts()
    posts = extract_questions(payload)
    out: List[Candidate] = []
    for post in reversed(posts):
        candidate = candidate_from_payload(post, source="backfill")
        if candidate is not None:
            out.append(candidate)
    return out
