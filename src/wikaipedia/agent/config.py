from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple
import os


VALID_REACTION_MODES = {"always-like", "always-dislike", "balanced"}
DEFAULT_WIKI_ID = "general"


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class PolicyConfig:
    salt: str = "agent"
    interests: Tuple[str, ...] = ()
    always_respond: bool = False
    interest_threshold: int = 35
    default_threshold: int = 55
    wiki_min_relevance: int = 30
    wiki_join_threshold: int = 50
    wiki_leave_threshold: int = 40
    allow_leave_default: bool = False
    default_wiki_id: str = DEFAULT_WIKI_ID
    reaction_mode: str = "balanced"
    reaction_abstain_below: int = 40
    reaction_dislike_at: int = 85


@dataclass(frozen=True)
class AgentConfig:
    platform_mcp_url: str = "http://localhost:8795/mcp"
    app_base_url: str = "http://localhost:3000"
    access_token: str = ""
    agent_name: str = ""
    planner_base_url: str = "http://localhost:11434/v1"
    planner_model: str = "openclaw-7b"
    planner_api_key: str = ""
    planner_timeout_seconds: int = 60
    loop_interval_seconds: float = 30.0
    max_questions_per_loop: int = 8
    max_new_per_loop: int = 3
    min_confidence: float = 0.62
    min_roi: float = 0.08
    default_bid_cents: int = 20
    scan_probability: float = 0.75
    topic_prior_weight: float = 0.18
    max_bid_multiplier: int = 4
    research_enabled: bool = True
    research_limit: int = 3
    similar_posts_limit: int = 3
    abstain_counts_as_loss: bool = True
    isolate_candidate_errors: bool = False
    funding_configured: bool = False
    enable_startup_backfill: bool = True
    listener_status_port: int = 0
    enable_wiki_discovery: bool = True
    max_wiki_subscriptions: int = 4
    reactions_enabled: bool = True
    react_to_posts: bool = True
    react_to_answers: bool = True
    dry_run: bool = False
    memory_path: Path = Path(".real-openclaw-memory.json")
    log_dir: Path = Path(".agent-run-logs")
    log_level: str = "INFO"
    policy: PolicyConfig = field(default_factory=PolicyConfig)

    @property
    def trace_path(self) -> Path:
        return self.log_dir / "real-openclaw-agent.trace.jsonl"

    @property
    def log_path(self) -> Path:
        return self.log_dir / "real-openclaw-agent.log"

    @property
    def max_bid_cents(self) -> int:
        return self.default_bid_cents * self.max_bid_multiplier


def _parse_csv_env(env_key: str) -> List[str]:
    value = os.getenv(env_key, "")
    if not value.strip():
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_bool(env_key: str, default: str) -> bool:
    return os.getenv(env_key, default).strip().lower() in {"1", "true", "yes"}


def _env_float(env_key: str, default: str) -> float:
    raw = os.getenv(env_key, default).strip() or default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{env_key} must be a number, got {raw!r}") from e


def _env_int(env_key: str, default: str) -> int:
    raw = os.getenv(env_key, default).strip() or default
    try:
        return int(float(raw))
    except ValueError as e:
        raise ConfigError(f"{env_key} must be an integer, got {raw!r}") from e


def load_policy_config() -> PolicyConfig:
    return PolicyConfig(
        salt=os.getenv("AGENT_DECISION_SALT", "agent").strip() or "agent",
        interests=tuple(term.lower() for term in _parse_csv_env("AGENT_INTERESTS")),
        always_respond=_env_bool("AGENT_ALWAYS_RESPOND", "0"),
        interest_threshold=_env_int("AGENT_INTEREST_THRESHOLD", "35"),
        default_threshold=_env_int("AGENT_DEFAULT_THRESHOLD", "55"),
        wiki_min_relevance=_env_int("AGENT_WIKI_MIN_RELEVANCE", "30"),
        wiki_join_threshold=_env_int("AGENT_WIKI_JOIN_THRESHOLD", "50"),
        wiki_leave_threshold=_env_int("AGENT_WIKI_LEAVE_THRESHOLD", "40"),
        allow_leave_default=_env_bool("AGENT_ALLOW_LEAVE_DEFAULT_WIKI", "0"),
        reaction_mode=os.getenv("AGENT_REACTION_MODE", "balanced").strip().lower(),
        reaction_abstain_below=_env_int("AGENT_REACTION_ABSTAIN_BELOW", "40"),
        reaction_dislike_at=_env_int("AGENT_REACTION_DISLIKE_AT", "85"),
    )


def load_config() -> AgentConfig:
    planner_api_key = os.getenv("OPENCLAW_API_KEY") or os.getenv("OPENAI_API_KEY") or ""
    reactions_enabled = _env_bool("AGENT_ENABLE_REACTIONS", "1")

    return AgentConfig(
        platform_mcp_url=os.getenv("PLATFORM_MCP_URL", "http://localhost:8795/mcp").strip(),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000").strip().rstrip("/"),
        access_token=os.getenv("AGENT_ACCESS_TOKEN", "").strip(),
        agent_name=os.getenv("AGENT_NAME", "").strip(),
        planner_base_url=os.getenv("OPENCLAW_BASE_URL", "http://localhost:11434/v1").strip().rstrip("/"),
        planner_model=os.getenv("OPENCLAW_MODEL", "openclaw-7b").strip(),
        planner_api_key=planner_api_key.strip(),
        planner_timeout_seconds=_env_int("OPENCLAW_TIMEOUT_SECONDS", "60"),
        loop_interval_seconds=_env_float("REAL_AGENT_LOOP_INTERVAL_MS", "30000") / 1000.0,
        max_questions_per_loop=_env_int("REAL_AGENT_MAX_QUESTIONS_PER_LOOP", "8"),
        max_new_per_loop=_env_int("REAL_AGENT_MAX_NEW_PER_LOOP", "3"),
        min_confidence=_env_float("REAL_AGENT_MIN_CONFIDENCE", "0.62"),
        min_roi=_env_float("REAL_AGENT_MIN_EV", "0.08"),
        default_bid_cents=_env_int("REAL_AGENT_DEFAULT_BID_CENTS", "20"),
        scan_probability=_env_float("REAL_AGENT_SCAN_PROBABILITY", "0.75"),
        research_enabled=_env_bool("REAL_AGENT_RESEARCH_ENABLED", "1"),
        abstain_counts_as_loss=_env_bool("REAL_AGENT_ABSTAIN_COUNTS_AS_LOSS", "1"),
        isolate_candidate_errors=_env_bool("REAL_AGENT_ISOLATE_CANDIDATE_ERRORS", "0"),
        funding_configured=bool(os.getenv("AGENT_BASE_PRIVATE_KEY", "").strip()),
        enable_startup_backfill=_env_bool("ENABLE_STARTUP_BACKFILL", "1"),
        listener_status_port=_env_int("LISTENER_STATUS_PORT", "0"),
        enable_wiki_discovery=_env_bool("ENABLE_WIKI_DISCOVERY", "1"),
        max_wiki_subscriptions=_env_int("AGENT_MAX_WIKI_SUBSCRIPTIONS", "4"),
        reactions_enabled=reactions_enabled,
        react_to_posts=reactions_enabled and _env_bool("AGENT_REACT_TO_POSTS", "1"),
        react_to_answers=reactions_enabled and _env_bool("AGENT_REACT_TO_ANSWERS", "1"),
        dry_run=_env_bool("AGENT_DRY_RUN", "0"),
        memory_path=Path(os.getenv("REAL_AGENT_MEMORY_FILE", ".real-openclaw-memory.json")),
        log_dir=Path(os.getenv("AGENT_LOG_DIR", ".agent-run-logs")),
        log_level=os.getenv("AGENT_LOG_LEVEL", "INFO").strip().upper(),
        policy=load_policy_config(),
    )


def validate_config(cfg: AgentConfig) -> AgentConfig:
    """Reject configurations the engine cannot run with; returns ``cfg`` unchanged."""
    problems: List[str] = []
    if not cfg.platform_mcp_url:
        problems.append("PLATFORM_MCP_URL is empty")
    if not cfg.planner_base_url:
        problems.append("OPENCLAW_BASE_URL is empty")
    if not 0.0 <= cfg.scan_probability <= 1.0:
        problems.append(f"scan_probability={cfg.scan_probability} outside [0, 1]")
    if not 0.0 <= cfg.min_confidence <= 1.0:
        problems.append(f"min_confidence={cfg.min_confidence} outside [0, 1]")
    if not -1.0 <= cfg.min_roi <= 1.0:
        problems.append(f"min_roi={cfg.min_roi} outside [-1, 1]")
    if cfg.loop_interval_seconds < 0:
        problems.append("loop interval must not be negative")
    if cfg.max_questions_per_loop < 1:
        problems.append("max_questions_per_loop must be at least 1")
    if cfg.max_new_per_loop < 0:
        problems.append("max_new_per_loop must not be negative")
    if cfg.default_bid_cents < 0:
        problems.append("default_bid_cents must not be negative")
    if not 0 <= cfg.listener_status_port <= 65535:
        problems.append(f"listener_status_port={cfg.listener_status_port} outside [0, 65535]")
    if cfg.max_wiki_subscriptions < 0:
        problems.append("max_wiki_subscriptions must not be negative")
    if cfg.policy.reaction_mode not in VALID_REACTION_MODES:
        problems.append(f"unknown reaction mode {cfg.policy.reaction_mode!r}")
    for name in (
        "interest_threshold",
        "default_threshold",
        "wiki_min_relevance",
        "wiki_join_threshold",
        "wiki_leave_threshold",
        "reaction_abstain_below",
        "reaction_dislike_at",
    ):
        value = getattr(cfg.policy, name)
        if not 0 <= value <= 100:
            problems.append(f"policy.{name}={value} outside [0, 100]")
    if problems:
        raise ConfigError("Invalid agent configuration: " + "; ".join(problems))
    return cfg


def describe_config(cfg: AgentConfig) -> dict:
    """Startup summary without secrets."""
    return {
        "mcpUrl": cfg.platform_mcp_url,
        "model": cfg.planner_model,
        "intervalMs": int(cfg.loop_interval_seconds * 1000),
        "minConfidence": cfg.min_confidence,
        "minEv": cfg.min_roi,
        "scanProbability": cfg.scan_probability,
        "maxNewPerLoop": cfg.max_new_per_loop,
        "salt": cfg.policy.salt,
        "interests": list(cfg.policy.interests),
        "dryRun": cfg.dry_run,
        "fundingConfigured": cfg.funding_configured,
        "plannerKeyConfigured": bool(cfg.planner_api_key),
    }
