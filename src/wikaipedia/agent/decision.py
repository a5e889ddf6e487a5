from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..platform_client import PlatformClient, normalize_str
from .config import AgentConfig
from .logging_utils import log_event
from .memory import MemoryStore, clamp
from .planner import Decision, Planner
from .topics import infer_topics


class CancelledError(Exception):
    """Raised between I/O stages once the engine's stop token is set."""


@dataclass
class Evaluation:
    question: Dict[str, Any]
    topics: List[str]
    topic_prior: float
    decision: Decision
    blended_confidence: float
    should_answer: bool
    similar_posts: List[Dict[str, Any]] = field(default_factory=list)
    research: List[Dict[str, Any]] = field(default_factory=list)
    research_failed: bool = False

    @property
    def question_id(self) -> str:
        return normalize_str(self.question.get("id")).strip()


def blend_confidence(confidence: float, topic_prior: float, weight: float = 0.18) -> float:
    return clamp(confidence + topic_prior * weight, 0.0, 1.0)


def passes_final_gate(decision: Decision, blended_confidence: float, cfg: AgentConfig) -> bool:
    return bool(
        decision.should_answer
        and blended_confidence >= cfg.min_confidence
        and decision.expected_roi >= cfg.min_roi
    )


def clamp_bid(requested_cents: int, default_bid_cents: int, multiplier: int = 4) -> int:
    requested = int(requested_cents or 0) or int(default_bid_cents)
    return max(0, min(requested, int(default_bid_cents) * int(multiplier)))


def _extract_list(payload: Any, *keys: str) -> List[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    for key in keys:
        value = payload.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    return []


class DecisionEngine:
    def __init__(
        self,
        cfg: AgentConfig,
        memory: MemoryStore,
        client: PlatformClient,
        planner: Planner,
        logger: Optional[logging.Logger] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.cfg = cfg
        self.memory = memory
        self.client = client
        self.planner = planner
        self.logger = logger or logging.getLogger("wikaipedia.agent")
        self.stop_event = stop_event or threading.Event()

    def _checkpoint(self) -> None:
        if self.stop_event.is_set():
            raise CancelledError("stop requested")

    def _similar_posts(self, question: Dict[str, Any]) -> List[Dict[str, Any]]:
        header = normalize_str(question.get("header")).strip()
        if not header:
            return []
        try:
            result = self.client.search_similar_questions(header)
        except Exception as e:
            log_event(
                self.logger,
                "similar-search-failed",
                {"questionId": normalize_str(question.get("id")), "error": str(e)},
                level=logging.WARNING,
            )
            return []
        qid = normalize_str(question.get("id")).strip()
        posts = [post for post in _extract_list(result, "posts", "questions") if normalize_str(post.get("id")) != qid]
        return posts[: self.cfg.similar_posts_limit]

    def _research(self, question: Dict[str, Any], topics: List[str]) -> List[Dict[str, Any]]:
        result = self.client.research_stackexchange(
            query=normalize_str(question.get("header")).strip(),
            tags=topics,
            limit=self.cfg.research_limit,
        )
        return _extract_list(result, "items")[: self.cfg.research_limit]

    def evaluate(self, question: Dict[str, Any], budget: Dict[str, Any]) -> Evaluation:
        """Run the planner over one question and apply the learned-prior gate.

        Planner transport and format errors propagate to the caller. Context
        search and research are best effort.
        """
        qid = normalize_str(question.get("id")).strip()
        topics = infer_topics(question)
        topic_prior = self.memory.topic_prior(topics)

        self._checkpoint()
        similar_posts = self._similar_posts(question)
        context: Dict[str, Any] = {
            "budget": budget,
            "topicPrior": topic_prior,
            "topics": topics,
            "similarPosts": similar_posts,
        }

        self._checkpoint()
        decision = self.planner.decide(question, context)

        research: List[Dict[str, Any]] = []
        research_failed = False
        if self.cfg.research_enabled and decision.research_needed:
            self._checkpoint()
            try:
                research = self._research(question, topics)
                decision = self.planner.decide(question, dict(context, research=research))
            except Exception as e:
                research_failed = True
                research = []
                log_event(
                    self.logger,
                    "research-failed",
                    {"questionId": qid, "error": str(e)},
                    level=logging.WARNING,
                )

        blended = blend_confidence(decision.confidence, topic_prior, self.cfg.topic_prior_weight)
        should_answer = passes_final_gate(decision, blended, self.cfg)
        evaluation = Evaluation(
            question=question,
            topics=topics,
            topic_prior=topic_prior,
            decision=decision,
            blended_confidence=blended,
            should_answer=should_answer,
            similar_posts=similar_posts,
            research=research,
            research_failed=research_failed,
        )
        self._audit(evaluation)
        return evaluation

    def _audit(self, evaluation: Evaluation) -> None:
        payload = {
            "questionId": evaluation.question_id,
            "topics": evaluation.topics,
            "topicPrior": evaluation.topic_prior,
            "confidence": evaluation.decision.confidence,
            "blendedConfidence": evaluation.blended_confidence,
            "expectedRoi": evaluation.decision.expected_roi,
            "shouldAnswer": evaluation.should_answer,
            "reason": evaluation.decision.reason,
        }
        if self.cfg.dry_run:
            log_event(self.logger, "decision", payload)
            return
        try:
            self.client.log_agent_event("decision", payload)
        except Exception as e:
            self.logger.debug("Audit event write failed question_id=%s error=%s", evaluation.question_id, e)

    def compose_answer(self, evaluation: Evaluation) -> str:
        self._checkpoint()
        return self.planner.compose_answer(evaluation.question, evaluation.research)

    def bid_for(self, evaluation: Evaluation) -> int:
        return clamp_bid(evaluation.decision.bid_amount_cents, self.cfg.default_bid_cents, self.cfg.max_bid_multiplier)
