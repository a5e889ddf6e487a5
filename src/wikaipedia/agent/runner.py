from __future__ import annotations

import logging
import random
import signal
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Optional

from ..platform_client import AppClient, PlatformAuthError, PlatformClient, PlatformError, normalize_str
from .actions import ANSWER_DRY_RUN, ANSWER_POSTED, ActionDispatcher
from .config import AgentConfig, describe_config
from .decision import CancelledError, DecisionEngine, Evaluation
from .logging_utils import log_event
from .memory import OUTCOME_FAILURE, OUTCOME_SUCCESS, MemoryStore
from .planner import Planner
from .policy import should_respond
from .reactions import react_to_question
from .sources import (
    Candidate,
    backfill_candidates,
    fetch_pull_candidates,
    is_closed,
    iter_event_frames,
    iter_stream_candidates,
    should_scan,
)
from .status import ListenerStatus, start_status_server, stop_status_server
from .trace_log import append_trace
from .wikis import run_wiki_discovery


@dataclass
class CandidateResult:
    question_id: str
    action: str
    counted: bool = True


@dataclass
class IterationReport:
    loop: int
    paused: bool = False
    scanned: bool = False
    fetched: int = 0
    processed: int = 0
    errors: int = 0


def _question_from_payload(payload: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return None
    for key in ("post", "question"):
        value = payload.get(key)
        if isinstance(value, dict) and normalize_str(value.get("id")).strip():
            return dict(value)
    if normalize_str(payload.get("id")).strip():
        return dict(payload)
    return None


def install_signal_handlers(stop_event: threading.Event, logger: logging.Logger) -> None:
    """SIGINT/SIGTERM request a clean stop; a second signal interrupts immediately."""

    def _handle(signum, _frame):
        if stop_event.is_set():
            raise KeyboardInterrupt
        logger.info("Stop requested signal=%s", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


class AgentEngine:
    """One autonomous agent: owns its memory, collaborators and stop token."""

    def __init__(
        self,
        cfg: AgentConfig,
        client: PlatformClient,
        planner: Planner,
        memory: MemoryStore,
        app_client: Optional[AppClient] = None,
        dispatcher: Optional[ActionDispatcher] = None,
        logger: Optional[logging.Logger] = None,
        rng: Optional[random.Random] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.cfg = cfg
        self.client = client
        self.planner = planner
        self.memory = memory
        self.app_client = app_client
        self.logger = logger or logging.getLogger("wikaipedia.agent")
        self.dispatcher = dispatcher or ActionDispatcher(cfg, client, self.logger)
        self.rng = rng or random.Random()
        self.stop_event = stop_event or threading.Event()
        self.decisions = DecisionEngine(cfg, memory, client, planner, self.logger, self.stop_event)
        self.status = ListenerStatus()

    def _checkpoint(self) -> None:
        if self.stop_event.is_set():
            raise CancelledError("stop requested")

    def _trace(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            append_trace(self.cfg.trace_path, event, payload)
        except OSError as e:
            self.logger.warning("Trace write failed event=%s error=%s", event, e)

    def _skip(self, question_id: str, action: str, payload: Dict[str, Any]) -> CandidateResult:
        self.memory.mark_seen(question_id)
        self.memory.append_history(dict(payload, questionId=question_id, action=action))
        self.memory.save()
        self._trace(action, dict(payload, questionId=question_id))
        log_event(self.logger, action, dict(payload, questionId=question_id))
        return CandidateResult(question_id=question_id, action=action, counted=False)

    def process_candidate(self, question_id: str, budget: Dict[str, Any]) -> CandidateResult:
        """Run one question through evaluation and, when it passes, answer it.

        Planner failures propagate and leave the question unseen so a later
        iteration can retry it.
        """
        self._checkpoint()
        question = _question_from_payload(self.client.get_question(question_id))
        if question is None:
            self.memory.mark_seen(question_id)
            self.logger.info("Question not found question_id=%s; marking seen.", question_id)
            return CandidateResult(question_id=question_id, action="missing", counted=False)
        question.setdefault("id", question_id)

        if is_closed(question):
            return self._skip(question_id, "question-closed", {"answersCloseAt": question.get("answersCloseAt")})

        evaluation = self.decisions.evaluate(question, budget)
        self._maybe_join_wiki(evaluation)

        if evaluation.should_answer:
            action = self._answer(evaluation)
        else:
            action = self._abstain(evaluation)

        react_to_question(self.cfg, question, self.dispatcher, self.logger, planner_vote=evaluation.decision.vote)
        self.memory.save()
        return CandidateResult(question_id=question_id, action=action)

    def _maybe_join_wiki(self, evaluation: Evaluation) -> None:
        wiki_id = evaluation.decision.join_wiki_id
        if wiki_id:
            self.dispatcher.join_wiki(wiki_id)

    def _abstain(self, evaluation: Evaluation) -> str:
        qid = evaluation.question_id
        entry = {
            "questionId": qid,
            "action": "abstain",
            "reason": evaluation.decision.reason,
            "confidence": evaluation.blended_confidence,
            "expectedRoi": evaluation.decision.expected_roi,
            "topics": evaluation.topics,
        }
        # Dry runs leave memory untouched.
        if not self.cfg.dry_run:
            self.memory.append_history(entry)
            if self.cfg.abstain_counts_as_loss:
                self.memory.record_outcome(evaluation.topics, OUTCOME_FAILURE)
            self.memory.mark_seen(qid)
        self._trace("abstain", dict(entry, researchFailed=evaluation.research_failed))
        log_event(self.logger, "abstain", {"questionId": qid, "reason": evaluation.decision.reason, "confidence": evaluation.blended_confidence})
        return "abstain"

    def _answer(self, evaluation: Evaluation) -> str:
        qid = evaluation.question_id
        content = self.decisions.compose_answer(evaluation)
        bid = self.decisions.bid_for(evaluation)
        outcome = self.dispatcher.submit_answer(qid, content, bid)
        if outcome.status == ANSWER_DRY_RUN:
            self._trace(outcome.history_action, {"questionId": qid, "bidAmountCents": bid, "topics": evaluation.topics, "answer": content})
            log_event(self.logger, outcome.history_action, {"questionId": qid, "bidAmountCents": bid})
            return outcome.history_action

        if outcome.status == ANSWER_POSTED and evaluation.decision.vote in {"up", "down"}:
            self.dispatcher.submit_vote(qid, evaluation.decision.vote, kind="post")

        entry: Dict[str, Any] = {
            "questionId": qid,
            "action": outcome.history_action,
            "bidAmountCents": bid,
            "confidence": evaluation.blended_confidence,
            "expectedRoi": evaluation.decision.expected_roi,
            "topics": evaluation.topics,
        }
        if outcome.tx_ref:
            entry["tx"] = outcome.tx_ref
        if outcome.error:
            entry["error"] = outcome.error
        self.memory.append_history(entry)
        self.memory.record_outcome(evaluation.topics, OUTCOME_SUCCESS if outcome.succeeded else OUTCOME_FAILURE)
        self.memory.mark_seen(qid)
        self._trace(outcome.history_action, dict(entry, answer=content))

        if outcome.succeeded:
            log_event(self.logger, "answer-posted" if outcome.status == ANSWER_POSTED else "answer-skipped", {"questionId": qid, "bidAmountCents": bid, "tx": outcome.tx_ref})
        else:
            log_event(self.logger, outcome.history_action, {"questionId": qid, "error": outcome.error}, level=logging.WARNING)
        return outcome.history_action

    def run_wiki_step(self) -> None:
        run_wiki_discovery(self.cfg, self.client, self.memory, self.dispatcher, self.logger)

    def run_iteration(self) -> IterationReport:
        report = IterationReport(loop=self.memory.begin_loop())
        try:
            self._checkpoint()
            budget = self.client.get_agent_budget()
            if isinstance(budget, dict) and budget.get("paused"):
                report.paused = True
                log_event(self.logger, "loop-paused", budget)
                return report

            if not should_scan(self.cfg.scan_probability, self.rng):
                log_event(self.logger, "loop-scan-skipped", {"scanProbability": self.cfg.scan_probability})
                return report
            report.scanned = True

            candidates = fetch_pull_candidates(self.client, self.memory, self.cfg.max_questions_per_loop, self.rng)
            report.fetched = len(candidates)
            if not candidates:
                log_event(self.logger, "loop-no-open-questions")

            for candidate in candidates:
                if report.processed >= self.cfg.max_new_per_loop:
                    break
                self._checkpoint()
                try:
                    result = self.process_candidate(candidate.question_id, budget)
                except (CancelledError, PlatformAuthError):
                    raise
                except Exception as e:
                    if not self.cfg.isolate_candidate_errors:
                        raise
                    report.errors += 1
                    log_event(
                        self.logger,
                        "candidate-failed",
                        {"questionId": candidate.question_id, "error": str(e)},
                        level=logging.WARNING,
                    )
                    continue
                if result.counted:
                    report.processed += 1

            self._checkpoint()
            self.run_wiki_step()
            return report
        finally:
            self.memory.save()

    def run_loop(self, max_iterations: Optional[int] = None) -> None:
        log_event(self.logger, "real-openclaw-agent-start", describe_config(self.cfg))
        iterations = 0
        try:
            while not self.stop_event.is_set():
                try:
                    report = self.run_iteration()
                    self.logger.info(
                        "Loop=%s paused=%s scanned=%s fetched=%s processed=%s errors=%s",
                        report.loop,
                        report.paused,
                        report.scanned,
                        report.fetched,
                        report.processed,
                        report.errors,
                    )
                except CancelledError:
                    break
                except PlatformAuthError:
                    raise
                except Exception as e:
                    log_event(self.logger, "loop-error", {"error": str(e)}, level=logging.ERROR)

                iterations += 1
                if max_iterations is not None and iterations >= max_iterations:
                    break
                self.logger.info("Sleeping seconds=%s", self.cfg.loop_interval_seconds)
                if self.stop_event.wait(self.cfg.loop_interval_seconds):
                    break
        finally:
            self.memory.save()
            log_event(self.logger, "real-openclaw-agent-stop", {"loops": self.memory.loops})

    def handle_push_candidate(self, candidate: Candidate) -> Optional[CandidateResult]:
        qid = candidate.question_id
        if self.memory.has_seen(qid):
            self.logger.debug("Skipping seen question question_id=%s", qid)
            return None

        verdict = should_respond(candidate.as_question(), self.cfg.policy)
        if not verdict.allowed:
            return self._skip(qid, "policy-skip", {"reason": verdict.reason, "score": verdict.score, "source": candidate.source})

        budget = self.client.get_agent_budget()
        if isinstance(budget, dict) and budget.get("paused"):
            log_event(self.logger, "loop-paused", budget)
            return None
        return self.process_candidate(qid, budget)

    def _handle_isolated(self, candidate: Candidate, from_stream: bool = False) -> None:
        if from_stream:
            self.status.record_event()
        try:
            result = self.handle_push_candidate(candidate)
        except (CancelledError, PlatformAuthError):
            raise
        except Exception as e:
            self.status.record_error(e)
            log_event(
                self.logger,
                "question-failed",
                {"questionId": candidate.question_id, "source": candidate.source, "error": str(e)},
                level=logging.WARNING,
            )
            return
        if result is not None and result.action == "answered":
            self.status.record_answer()

    def _track_connection(self, lines: Iterable[str]) -> Iterator[str]:
        for line in lines:
            if not self.status.connected:
                self.status.set_connected(True)
            yield line

    def run_backfill(self) -> int:
        if self.app_client is None:
            return 0
        try:
            candidates = backfill_candidates(self.app_client)
        except PlatformError as e:
            self.logger.warning("Backfill skipped: %s", e)
            return 0
        self.logger.info("Backfill starting posts=%s", len(candidates))
        for candidate in candidates:
            self._checkpoint()
            self._handle_isolated(candidate)
        return len(candidates)

    def listen(self, reconnect: bool = True) -> None:
        """Push mode: backfill once, then answer questions as they are announced.

        With ``listener_status_port`` set, ``GET /health`` serves the listener counters.
        """
        if self.app_client is None:
            raise ValueError("listen() requires an app client")
        log_event(self.logger, "agent-listener-start", describe_config(self.cfg))
        server = None
        try:
            if self.cfg.listener_status_port > 0:
                server = start_status_server(self.status, self.cfg.listener_status_port)
            if self.cfg.enable_startup_backfill:
                self.run_backfill()
            while not self.stop_event.is_set():
                try:
                    frames = iter_event_frames(self._track_connection(self.app_client.stream_question_events()))
                    self.logger.info("Listening on question stream base_url=%s", self.app_client.base_url)
                    for candidate in iter_stream_candidates(frames):
                        self._checkpoint()
                        self._handle_isolated(candidate, from_stream=True)
                except PlatformAuthError:
                    raise
                except PlatformError as e:
                    self.status.record_error(e)
                    log_event(self.logger, "stream-error", {"error": str(e)}, level=logging.WARNING)
                finally:
                    self.status.set_connected(False)
                if not reconnect:
                    break
                self.logger.info("Sleeping seconds=%s reason=stream_reconnect", self.cfg.loop_interval_seconds)
                if self.stop_event.wait(self.cfg.loop_interval_seconds):
                    break
        except CancelledError:
            self.logger.info("Listener cancelled; abandoning in-flight question.")
        finally:
            stop_status_server(server)
            self.memory.save()
            log_event(self.logger, "agent-listener-stop", dict(self.status.to_dict(), seen=len(self.memory.seen_question_ids)))


def build_engine(cfg: AgentConfig, logger: logging.Logger, stop_event: Optional[threading.Event] = None) -> AgentEngine:
    client = PlatformClient(cfg.platform_mcp_url)
    app_client = AppClient(cfg.app_base_url, cfg.access_token)
    memory = MemoryStore(cfg.memory_path).load()
    return AgentEngine(
        cfg=cfg,
        client=client,
        planner=Planner(cfg),
        memory=memory,
        app_client=app_client,
        logger=logger,
        stop_event=stop_event,
    )
