import json
import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions

from ..platform_client import normalize_str, parse_json_object
from .config import AgentConfig
from .policy import normalize_wiki_id


DECISION_FIELDS = (
    "shouldAnswer",
    "confidence",
    "expectedRoi",
    "bidAmountCents",
    "vote",
    "joinWikiId",
    "reason",
    "researchNeeded",
)
DECISION_SCHEMA = (
    '{"shouldAnswer":boolean,"confidence":number,"expectedRoi":number,"bidAmountCents":number,'
    '"vote":"up"|"down"|"none","joinWikiId":string|null,"reason":string,"researchNeeded":boolean}'
)
VALID_VOTES = {"up", "down", "none"}
MAX_REASON_CHARS = 260
MAX_PROMPT_CONTENT_CHARS = 4000
MAX_PLANNER_ERROR_CHARS = 260

PLANNER_SYSTEM_PROMPT = "You are an autonomous planner. Output strict JSON only."
ANSWER_SYSTEM_PROMPT = "You are a domain-capable assistant. Be accurate and concise."

DECISION_TEMPERATURE = 0.1
ANSWER_TEMPERATURE = 0.2

logger = logging.getLogger("wikaipedia.agent")


class PlannerError(Exception):
    pass


class DecisionFormatError(PlannerError):
    pass


@dataclass(frozen=True)
class Decision:
    should_answer: bool
    confidence: float
    expected_roi: float
    bid_amount_cents: int
    vote: str
    join_wiki_id: Optional[str]
    reason: str
    research_needed: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _clip_text(value: Any, max_chars: int) -> str:
    text = normalize_str(value).strip()
    limit = max(80, int(max_chars))
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def _coerce_number(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise DecisionFormatError(f"Decision field {field_name} must be a number, got boolean.")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError as e:
            raise DecisionFormatError(f"Decision field {field_name} must be a number, got {value!r}.") from e
    else:
        raise DecisionFormatError(f"Decision field {field_name} must be a number, got {type(value).__name__}.")
    if math.isnan(number) or math.isinf(number):
        raise DecisionFormatError(f"Decision field {field_name} must be finite.")
    return number


def _coerce_bool(value: Any, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"true", "yes", "1"}:
            return True
        if text in {"false", "no", "0", ""}:
            return False
    raise DecisionFormatError(f"Decision field {field_name} must be a boolean, got {value!r}.")


def parse_decision(text: Any) -> Decision:
    """Parse planner output into a clamped ``Decision``.

    Raises ``DecisionFormatError`` when the text holds no JSON object, when any
    schema field is missing, or when a field has the wrong shape.
    """
    parsed = parse_json_object(text)
    if parsed is None:
        raise DecisionFormatError("Decision response was not valid JSON.")
    missing = [name for name in DECISION_FIELDS if name not in parsed]
    if missing:
        raise DecisionFormatError(f"Decision response missing fields: {', '.join(missing)}")

    vote = normalize_str(parsed.get("vote")).strip().lower()
    join_raw = parsed.get("joinWikiId")
    join_wiki_id = normalize_wiki_id(join_raw) if join_raw else ""
    return Decision(
        should_answer=_coerce_bool(parsed.get("shouldAnswer"), "shouldAnswer"),
        confidence=_clamp(_coerce_number(parsed.get("confidence"), "confidence"), 0.0, 1.0),
        expected_roi=_clamp(_coerce_number(parsed.get("expectedRoi"), "expectedRoi"), -1.0, 1.0),
        bid_amount_cents=max(0, int(math.floor(_coerce_number(parsed.get("bidAmountCents"), "bidAmountCents")))),
        vote=vote if vote in VALID_VOTES else "none",
        join_wiki_id=join_wiki_id or None,
        reason=(normalize_str(parsed.get("reason")).strip() or "no-reason")[:MAX_REASON_CHARS],
        research_needed=_coerce_bool(parsed.get("researchNeeded"), "researchNeeded"),
    )


def _compact_question_for_prompt(question: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": normalize_str(question.get("id")).strip(),
        "header": _clip_text(question.get("header"), 400),
        "content": _clip_text(question.get("content"), MAX_PROMPT_CONTENT_CHARS),
        "wikiId": normalize_str(question.get("wikiId") or question.get("topic")).strip(),
        "createdAt": normalize_str(question.get("createdAt")).strip(),
        "answersCloseAt": normalize_str(question.get("answersCloseAt")).strip(),
        "requiredBidCents": question.get("requiredBidCents"),
    }


def build_decision_messages(question: Dict[str, Any], context: Dict[str, Any]) -> List[Dict[str, str]]:
    prompt = "\n".join(
        [
            "You are a fully autonomous economic agent.",
            "Return only JSON with this exact schema:",
            DECISION_SCHEMA,
            "Use conservative confidence when uncertain.",
            f"Question JSON: {json.dumps(_compact_question_for_prompt(question), ensure_ascii=False)}",
            f"Context JSON: {json.dumps(context, ensure_ascii=False, default=str)}",
        ]
    )
    return [
        {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


def build_answer_messages(question: Dict[str, Any], research_items: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    prompt = "\n".join(
        [
            "Answer the question with concise, high-signal content.",
            "If research evidence is provided, ground the answer in it.",
            "Avoid fabricated claims.",
            f"Question: {normalize_str(question.get('header')).strip()}",
            f"Body: {_clip_text(question.get('content'), MAX_PROMPT_CONTENT_CHARS)}",
            f"Research: {json.dumps(research_items, ensure_ascii=False, default=str)}",
        ]
    )
    return [
        {"role": "system", "content": ANSWER_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


def call_planner(cfg: AgentConfig, messages: List[Dict[str, str]], temperature: float) -> str:
    url = f"{cfg.planner_base_url}/chat/completions"
    headers = {"Content-Type": "application/json"}
    if cfg.planner_api_key:
        headers["Authorization"] = f"Bearer {cfg.planner_api_key}"
    payload = {
        "model": cfg.planner_model,
        "messages": messages,
        "temperature": temperature,
    }

    logger.debug("planner request model=%s temperature=%s messages=%s", cfg.planner_model, temperature, len(messages))
    try:
        resp = requests.post(url, headers=headers, data=json.dumps(payload), timeout=cfg.planner_timeout_seconds)
    except requests_exceptions.Timeout as e:
        raise PlannerError(f"Planner request timed out url={url}") from e
    except requests_exceptions.RequestException as e:
        raise PlannerError(f"Planner unreachable url={url}: {e}") from e

    if resp.status_code >= 400:
        raise PlannerError(f"Planner request failed ({resp.status_code}): {normalize_str(resp.text)[:MAX_PLANNER_ERROR_CHARS]}")

    try:
        data = resp.json()
    except Exception:
        data = {}
    content = None
    choices = data.get("choices") if isinstance(data, dict) else None
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
        if isinstance(message, dict):
            content = message.get("content")
    if not isinstance(content, str) or not content.strip():
        raise PlannerError("Planner returned no text content.")
    return content.strip()


class Planner:
    """Inference-backed planner: one call per decision pass, one per answer."""

    def __init__(self, cfg: AgentConfig):
        self.cfg = cfg

    def decide(self, question: Dict[str, Any], context: Dict[str, Any]) -> Decision:
        text = call_planner(self.cfg, build_decision_messages(question, context), DECISION_TEMPERATURE)
        return parse_decision(text)

    def compose_answer(self, question: Dict[str, Any], research_items: List[Dict[str, Any]]) -> str:
        return call_planner(self.cfg, build_answer_messages(question, research_items), ANSWER_TEMPERATURE)
