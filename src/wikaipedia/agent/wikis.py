from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..platform_client import PlatformClient, normalize_str
from .actions import ActionDispatcher
from .config import AgentConfig
from .logging_utils import log_event
from .memory import MemoryStore
from .policy import WikiVerdict, evaluate_wiki_join, evaluate_wiki_leave, normalize_wiki_id, score_wiki_query


@dataclass
class WikiStepResult:
    joined: Optional[str] = None
    left: Optional[str] = None
    join_verdict: Optional[WikiVerdict] = None
    leave_verdict: Optional[WikiVerdict] = None


def parse_wikis(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = payload.get("wikis") or payload.get("items") or payload.get("data") or []
    else:
        items = []
    out: List[Dict[str, Any]] = []
    for item in items if isinstance(items, list) else []:
        if not isinstance(item, dict):
            continue
        wiki_id = normalize_wiki_id(item.get("id") or item.get("slug") or item.get("name"))
        if not wiki_id:
            continue
        out.append(
            {
                "id": wiki_id,
                "displayName": normalize_str(item.get("displayName") or item.get("display_name")).strip(),
                "description": normalize_str(item.get("description")).strip(),
                "joined": bool(item.get("joined") or item.get("isMember") or item.get("subscribed")),
            }
        )
    return out


def discovery_queries(cfg: AgentConfig, memory: MemoryStore) -> List[str]:
    """Interests plus every topic the agent is currently winning in."""
    queries: List[str] = []
    for item in cfg.policy.interests:
        text = normalize_str(item).strip().lower()
        if text and text not in queries:
            queries.append(text)
    for topic in sorted(memory.topic_performance):
        stats = memory.topic_performance[topic]
        if stats.get("win", 0) > stats.get("loss", 0) and topic not in queries:
            queries.append(topic)
    return queries


def relevance_candidates(wikis: Sequence[Dict[str, Any]], queries: Sequence[str]) -> List[Tuple[str, int]]:
    out: List[Tuple[str, int]] = []
    for wiki in wikis:
        if wiki.get("joined"):
            continue
        best = max((score_wiki_query(query, wiki) for query in queries), default=0)
        if best > 0:
            out.append((wiki["id"], best))
    out.sort(key=lambda item: (-item[1], item[0]))
    return out


def run_wiki_discovery(
    cfg: AgentConfig,
    client: PlatformClient,
    memory: MemoryStore,
    dispatcher: ActionDispatcher,
    logger: logging.Logger,
) -> WikiStepResult:
    result = WikiStepResult()
    if not cfg.enable_wiki_discovery:
        return result

    try:
        wikis = parse_wikis(client.list_wikis())
    except Exception as e:
        logger.warning("Wiki discovery skipped: %s", e)
        return result

    joined_ids = [wiki["id"] for wiki in wikis if wiki["joined"]]
    candidates = relevance_candidates(wikis, discovery_queries(cfg, memory))
    result.join_verdict = evaluate_wiki_join(candidates, cfg.policy)
    log_event(
        logger,
        "wiki-join-verdict",
        {"action": result.join_verdict.action, "wikiId": result.join_verdict.wiki_id, "reason": result.join_verdict.reason},
        level=logging.DEBUG,
    )
    if result.join_verdict.action == "join" and result.join_verdict.wiki_id:
        if dispatcher.join_wiki(result.join_verdict.wiki_id):
            result.joined = result.join_verdict.wiki_id
            joined_ids.append(result.joined)

    result.leave_verdict = evaluate_wiki_leave(
        joined_ids, cfg.max_wiki_subscriptions, cfg.policy, protected=[result.joined] if result.joined else ()
    )
    if result.leave_verdict.action == "leave" and result.leave_verdict.wiki_id:
        if dispatcher.leave_wiki(result.leave_verdict.wiki_id):
            result.left = result.leave_verdict.wiki_id
    return result
