from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..platform_client import PlatformClient, PlatformError, normalize_str
from .config import AgentConfig
from .logging_utils import log_event


ANSWER_POSTED = "posted"
ANSWER_DUPLICATE = "duplicate"
ANSWER_PAYMENT_CONFIG = "payment_config"
ANSWER_FAILED = "failed"
ANSWER_DRY_RUN = "dry_run"

ALREADY_ANSWERED_MARKERS = ("already answered", "already submitted an answer", "duplicate answer")
PAYMENT_REQUIRED_MARKERS = ("payment required", "x402")


def answer_key(question_id: Any) -> str:
    return f"answer-{normalize_str(question_id).strip()}"


def vote_key(target_id: Any, kind: str = "post") -> str:
    target = normalize_str(target_id).strip()
    if kind == "answer":
        return f"vote-answer-{target}"
    return f"vote-{target}"


def join_key(wiki_id: Any) -> str:
    return f"join-{normalize_str(wiki_id).strip()}"


def leave_key(wiki_id: Any) -> str:
    return f"leave-{normalize_str(wiki_id).strip()}"


@dataclass
class AnswerOutcome:
    status: str
    idempotency_key: str
    bid_amount_cents: int
    tx_ref: Optional[str] = None
    error: str = ""
    response: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status in {ANSWER_POSTED, ANSWER_DUPLICATE}

    @property
    def history_action(self) -> str:
        return {
            ANSWER_POSTED: "answered",
            ANSWER_DUPLICATE: "already-answered",
            ANSWER_PAYMENT_CONFIG: "answer-payment-config-error",
            ANSWER_DRY_RUN: "dry-run-answer",
        }.get(self.status, "answer-failed")


def _is_payment_required(error: PlatformError) -> bool:
    if error.status_code == 402:
        return True
    lower = str(error).lower()
    return "(402)" in lower or any(marker in lower for marker in PAYMENT_REQUIRED_MARKERS)


def classify_answer_error(error: Exception, funding_configured: bool) -> str:
    """Map an answer submission failure to an outcome status.

    Duplicate submissions are benign. A payment-required rejection without a
    funding key is a configuration problem for this action only.
    """
    lower = str(error).lower()
    if any(marker in lower for marker in ALREADY_ANSWERED_MARKERS):
        return ANSWER_DUPLICATE
    if isinstance(error, PlatformError) and _is_payment_required(error) and not funding_configured:
        return ANSWER_PAYMENT_CONFIG
    return ANSWER_FAILED


def _tx_ref(response: Dict[str, Any]) -> Optional[str]:
    for key in ("paymentTxHash", "txRef", "txHash"):
        value = normalize_str(response.get(key)).strip()
        if value:
            return value
    return None


class ActionDispatcher:
    def __init__(self, cfg: AgentConfig, client: PlatformClient, logger: Optional[logging.Logger] = None):
        self.cfg = cfg
        self.client = client
        self.logger = logger or logging.getLogger("wikaipedia.agent")

    def submit_answer(self, question_id: str, content: str, bid_amount_cents: int) -> AnswerOutcome:
        key = answer_key(question_id)
        if self.cfg.dry_run:
            log_event(self.logger, "dry-run post_answer", {"questionId": question_id, "bidAmountCents": bid_amount_cents})
            return AnswerOutcome(status=ANSWER_DRY_RUN, idempotency_key=key, bid_amount_cents=bid_amount_cents)
        try:
            response = self.client.post_answer(
                question_id=question_id,
                content=content,
                bid_amount_cents=bid_amount_cents,
                idempotency_key=key,
            )
        except Exception as e:
            status = classify_answer_error(e, self.cfg.funding_configured)
            error = str(e)
            if status == ANSWER_PAYMENT_CONFIG:
                error = "Payment required and AGENT_BASE_PRIVATE_KEY is missing."
            return AnswerOutcome(status=status, idempotency_key=key, bid_amount_cents=bid_amount_cents, error=error)
        return AnswerOutcome(
            status=ANSWER_POSTED,
            idempotency_key=key,
            bid_amount_cents=bid_amount_cents,
            tx_ref=_tx_ref(response),
            response=response,
        )

    def submit_vote(self, target_id: str, direction: str, kind: str = "post") -> bool:
        if direction not in {"up", "down"}:
            return False
        key = vote_key(target_id, kind)
        if self.cfg.dry_run:
            log_event(self.logger, "dry-run vote", {"targetId": target_id, "direction": direction, "kind": kind})
            return True
        try:
            if kind == "answer":
                self.client.vote_answer(target_id, direction, idempotency_key=key)
            else:
                self.client.vote_post(target_id, direction, idempotency_key=key)
        except Exception as e:
            log_event(
                self.logger,
                "vote-failed",
                {"targetId": target_id, "kind": kind, "direction": direction, "error": str(e)},
                level=logging.WARNING,
            )
            return False
        log_event(self.logger, "vote-cast", {"targetId": target_id, "kind": kind, "direction": direction})
        return True

    def join_wiki(self, wiki_id: str) -> bool:
        key = join_key(wiki_id)
        if self.cfg.dry_run:
            log_event(self.logger, "dry-run join-wiki", {"wikiId": wiki_id})
            return True
        try:
            self.client.join_wiki(wiki_id, idempotency_key=key)
        except Exception as e:
            log_event(self.logger, "join-wiki-failed", {"wikiId": wiki_id, "error": str(e)}, level=logging.WARNING)
            return False
        log_event(self.logger, "join-wiki", {"wikiId": wiki_id})
        return True

    def leave_wiki(self, wiki_id: str) -> bool:
        key = leave_key(wiki_id)
        if self.cfg.dry_run:
            log_event(self.logger, "dry-run leave-wiki", {"wikiId": wiki_id})
            return True
        try:
            self.client.leave_wiki(wiki_id, idempotency_key=key)
        except Exception as e:
            log_event(self.logger, "leave-wiki-failed", {"wikiId": wiki_id, "error": str(e)}, level=logging.WARNING)
            return False
        log_event(self.logger, "leave-wiki", {"wikiId": wiki_id})
        return True
