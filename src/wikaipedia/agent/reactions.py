from __future__ import annotations

import logging
from typing import Any, Dict, List

from .actions import ActionDispatcher
from .config import AgentConfig
from .logging_utils import log_event
from .policy import evaluate_answer_reaction, evaluate_post_reaction


def _answers_of(question: Dict[str, Any]) -> List[Dict[str, Any]]:
    answers = question.get("answers")
    if not isinstance(answers, list):
        return []
    return [item for item in answers if isinstance(item, dict)]


def react_to_question(
    cfg: AgentConfig,
    question: Dict[str, Any],
    dispatcher: ActionDispatcher,
    logger: logging.Logger,
    planner_vote: str = "none",
) -> List[Dict[str, Any]]:
    """Cast policy votes on a question and on the answers it already has.

    A planner vote on the question takes precedence over the policy reaction.
    Returns one row per vote that went through.
    """
    if not cfg.reactions_enabled:
        return []

    cast: List[Dict[str, Any]] = []
    if cfg.react_to_posts and planner_vote == "none":
        verdict = evaluate_post_reaction(question, cfg.agent_name, cfg.policy)
        if verdict.vote in {"up", "down"}:
            target = str(question.get("id"))
            if dispatcher.submit_vote(target, verdict.vote, kind="post"):
                cast.append({"kind": "post", "targetId": target, "direction": verdict.vote})
        else:
            log_event(logger, "reaction-skip", {"kind": "post", "reason": verdict.reason}, level=logging.DEBUG)

    if cfg.react_to_answers:
        for answer in _answers_of(question):
            verdict = evaluate_answer_reaction(answer, cfg.agent_name, cfg.policy)
            if verdict.vote not in {"up", "down"}:
                continue
            target = str(answer.get("id"))
            if dispatcher.submit_vote(target, verdict.vote, kind="answer"):
                cast.append({"kind": "answer", "targetId": target, "direction": verdict.vote})
    return cast
