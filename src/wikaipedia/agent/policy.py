"""Deterministic gating policy for the agent.

Every gate compares a threshold against ``hash_score``: a 31-multiplier rolling
hash of the ``|``-joined inputs reduced modulo 100. Identical inputs give the
identical score on every run and every implementation, so a decision trace can
be replayed from its inputs and the agent's salt alone.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..platform_client import normalize_str
from .config import PolicyConfig


HASH_MULTIPLIER = 31
HASH_MODULUS = 2**32
SCORE_BUCKETS = 100


@dataclass(frozen=True)
class PolicyVerdict:
    allowed: bool
    score: int
    reason: str


@dataclass(frozen=True)
class WikiVerdict:
    action: str
    wiki_id: Optional[str]
    score: int
    reason: str


@dataclass(frozen=True)
class ReactionVerdict:
    vote: str
    score: int
    reason: str


def rolling_hash(text: str) -> int:
    """Hash UTF-16 code units, so characters outside the BMP count as two surrogates."""
    data = text.encode("utf-16-le", "surrogatepass")
    value = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        value = (value * HASH_MULTIPLIER + unit) % HASH_MODULUS
    return value


def hash_score(*parts: Any) -> int:
    key = "|".join(normalize_str(part) for part in parts)
    return rolling_hash(key) % SCORE_BUCKETS


def question_id(question: Dict[str, Any]) -> str:
    return normalize_str(question.get("id") or question.get("postId") or question.get("questionId")).strip()


def question_topic(question: Dict[str, Any]) -> str:
    raw = question.get("wikiId") or question.get("wiki") or question.get("topic")
    if isinstance(raw, dict):
        raw = raw.get("id") or raw.get("name")
    return normalize_wiki_id(raw) or "general"


def question_text(question: Dict[str, Any]) -> str:
    return f"{normalize_str(question.get('header'))} {normalize_str(question.get('content'))}".lower()


def matched_interests(text: str, interests: Sequence[str]) -> List[str]:
    lower = normalize_str(text).lower()
    return [term for term in interests if term and term.lower() in lower]


def should_respond(question: Dict[str, Any], cfg: PolicyConfig) -> PolicyVerdict:
    if cfg.always_respond:
        return PolicyVerdict(allowed=True, score=0, reason="always_respond")

    score = hash_score(
        cfg.salt,
        question_id(question),
        question_topic(question),
        normalize_str(question.get("header")).strip(),
    )
    matches = matched_interests(question_text(question), cfg.interests)
    if cfg.interests and not matches:
        return PolicyVerdict(allowed=False, score=score, reason="no_interest_match")

    threshold = cfg.interest_threshold if matches else cfg.default_threshold
    if score >= threshold:
        return PolicyVerdict(allowed=True, score=score, reason=f"score={score} threshold={threshold}")
    return PolicyVerdict(
        allowed=False,
        score=score,
        reason=f"score_below_threshold score={score} threshold={threshold}",
    )


def evaluate_wiki_join(candidates: Iterable[Tuple[str, int]], cfg: PolicyConfig) -> WikiVerdict:
    """Pick the most relevant candidate wiki and gate the join twice.

    Relevance must reach ``wiki_min_relevance`` and the hashed willingness
    score must reach ``wiki_join_threshold``.
    """
    best_id: Optional[str] = None
    best_relevance = -1
    for raw_id, relevance in candidates:
        wiki_id = normalize_wiki_id(raw_id)
        if not wiki_id:
            continue
        if int(relevance) > best_relevance:
            best_id = wiki_id
            best_relevance = int(relevance)

    if best_id is None:
        return WikiVerdict(action="none", wiki_id=None, score=0, reason="no_candidates")
    if best_relevance < cfg.wiki_min_relevance:
        return WikiVerdict(
            action="none",
            wiki_id=best_id,
            score=best_relevance,
            reason=f"relevance_below_min relevance={best_relevance} min={cfg.wiki_min_relevance}",
        )

    score = hash_score(cfg.salt, "join", best_id)
    if score < cfg.wiki_join_threshold:
        return WikiVerdict(
            action="none",
            wiki_id=best_id,
            score=score,
            reason=f"join_gate_closed score={score} threshold={cfg.wiki_join_threshold}",
        )
    return WikiVerdict(action="join", wiki_id=best_id, score=score, reason=f"relevance={best_relevance} score={score}")


def evaluate_wiki_leave(
    joined_ids: Iterable[str],
    max_subscriptions: int,
    cfg: PolicyConfig,
    protected: Iterable[str] = (),
) -> WikiVerdict:
    """Pick the lexicographically last joined wiki once membership exceeds the cap.

    ``protected`` ids still count toward the cap but are never chosen.
    """
    joined = sorted({normalize_wiki_id(item) for item in joined_ids if normalize_wiki_id(item)})
    if len(joined) <= max(0, int(max_subscriptions)):
        return WikiVerdict(action="none", wiki_id=None, score=0, reason="within_cap")

    keep = {normalize_wiki_id(item) for item in protected}
    candidates = [
        item for item in joined if item not in keep and (cfg.allow_leave_default or item != cfg.default_wiki_id)
    ]
    if not candidates:
        return WikiVerdict(action="none", wiki_id=None, score=0, reason="no_leave_candidates")

    wiki_id = candidates[-1]
    score = hash_score(cfg.salt, "leave", wiki_id)
    if score < cfg.wiki_leave_threshold:
        return WikiVerdict(
            action="none",
            wiki_id=wiki_id,
            score=score,
            reason=f"leave_gate_closed score={score} threshold={cfg.wiki_leave_threshold}",
        )
    return WikiVerdict(action="leave", wiki_id=wiki_id, score=score, reason=f"over_cap joined={len(joined)}")


def _author_key(item: Dict[str, Any]) -> str:
    for key in ("poster", "author", "agentName", "authorName", "username"):
        value = item.get(key)
        if isinstance(value, dict):
            value = value.get("name") or value.get("username")
        text = normalize_str(value).strip().lower()
        if text:
            return text
    return ""


def _evaluate_reaction(kind: str, item: Dict[str, Any], self_name: str, cfg: PolicyConfig) -> ReactionVerdict:
    item_id = normalize_str(item.get("id")).strip()
    if not item_id:
        return ReactionVerdict(vote="none", score=0, reason="missing_id")
    me = normalize_str(self_name).strip().lower()
    if me and _author_key(item) == me:
        return ReactionVerdict(vote="none", score=0, reason="self_authored")

    score = hash_score(cfg.salt, kind, item_id)
    if cfg.reaction_mode == "always-like":
        return ReactionVerdict(vote="up", score=score, reason="always-like")
    if cfg.reaction_mode == "always-dislike":
        return ReactionVerdict(vote="down", score=score, reason="always-dislike")
    if score < cfg.reaction_abstain_below:
        return ReactionVerdict(vote="none", score=score, reason=f"abstain score={score}")
    if score >= cfg.reaction_dislike_at:
        return ReactionVerdict(vote="down", score=score, reason=f"dislike score={score}")
    return ReactionVerdict(vote="up", score=score, reason=f"like score={score}")


def evaluate_post_reaction(post: Dict[str, Any], self_name: str, cfg: PolicyConfig) -> ReactionVerdict:
    return _evaluate_reaction("post", post, self_name, cfg)


def evaluate_answer_reaction(answer: Dict[str, Any], self_name: str, cfg: PolicyConfig) -> ReactionVerdict:
    return _evaluate_reaction("answer", answer, self_name, cfg)


def normalize_wiki_id(value: Any) -> str:
    text = normalize_str(value).strip().lower()
    text = re.sub(r"^w/", "", text)
    text = re.sub(r"[^a-z0-9\-_]+", "-", text)
    text = re.sub(r"-{2,}", "-", text)
    return re.sub(r"^[-_]+|[-_]+$", "", text)


def score_wiki_query(query: str, wiki: Dict[str, Any]) -> int:
    """Relevance of ``wiki`` to a free-text query, 0-100."""
    q = re.sub(r"^w/", "", normalize_str(query).strip().lower())
    if not q:
        return 0

    wiki_id = normalize_str(wiki.get("id")).lower()
    display = normalize_str(wiki.get("displayName") or wiki.get("display_name")).lower()
    description = normalize_str(wiki.get("description")).lower()

    if wiki_id == q:
        return 100
    if display == q:
        return 95
    if wiki_id.startswith(q):
        return 85
    if display.startswith(q):
        return 80
    if q in wiki_id:
        return 70
    if q in display:
        return 65
    if q in description:
        return 40

    tokens = [token for token in re.split(r"[-_\s]+", q) if token]
    if tokens:
        joined = f"{wiki_id} {display} {description}"
        hits = sum(1 for token in tokens if token in joined)
        if hits > 0:
            return 30 + hits * 5
    return 0
