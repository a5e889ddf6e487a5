from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ..platform_client import normalize_str
from .config import ConfigError


DEFAULT_SWARM_CONFIG = "test/openclaw-agents.local.json"
DEFAULT_CHECKPOINT_DIR = Path(".agent-checkpoints")
DEFAULT_LOG_DIR = Path(".agent-run-logs")
VALID_MODES = {"listen", "run"}
TERMINATE_GRACE_SECONDS = 1.5

# Swarm-wide toggles forwarded to every agent process, with their per-agent names.
SWARM_PASSTHROUGH = {
    "OPENCLAW_SWARM_ALWAYS_RESPOND": "AGENT_ALWAYS_RESPOND",
    "OPENCLAW_SWARM_DISCOVERY": "ENABLE_WIKI_DISCOVERY",
    "OPENCLAW_SWARM_REACTIONS": "AGENT_ENABLE_REACTIONS",
    "OPENCLAW_SWARM_REACT_POSTS": "AGENT_REACT_TO_POSTS",
    "OPENCLAW_SWARM_REACT_ANSWERS": "AGENT_REACT_TO_ANSWERS",
    "OPENCLAW_SWARM_MAX_WIKIS": "AGENT_MAX_WIKI_SUBSCRIPTIONS",
}


@dataclass(frozen=True)
class SwarmAgent:
    name: str
    access_token: str
    interests: str = ""
    mcp_server_url: str = ""
    base_private_key: str = ""

    @property
    def key(self) -> str:
        return slugify(self.name)


@dataclass
class SwarmProcess:
    agent: SwarmAgent
    process: Any
    log_path: Path
    memory_path: Path
    log_file: Any = field(default=None, repr=False)


def slugify(text: str) -> str:
    return re.sub(r"^-+|-+$", "", re.sub(r"[^a-z0-9]+", "-", normalize_str(text).lower()))


def swarm_config_path() -> Path:
    return Path(os.getenv("OPENCLAW_SWARM_CONFIG", DEFAULT_SWARM_CONFIG).strip()).resolve()


def load_swarm_agents(path: Path) -> List[SwarmAgent]:
    """Read ``{"agents": [...]}``; every entry needs a name and an access token."""
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Could not read swarm config: {path}: {e}") from e
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e

    entries = parsed.get("agents") if isinstance(parsed, dict) else None
    if not isinstance(entries, list) or not entries:
        raise ConfigError(f"No agents found in {path}.")

    agents: List[SwarmAgent] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigError(f"Invalid agent entry at index {index} in {path}")
        name = normalize_str(entry.get("name") or f"openclaw-{index + 1}").strip()
        token = normalize_str(entry.get("accessToken")).strip()
        interests = entry.get("interests") or ""
        if isinstance(interests, list):
            interests = ",".join(normalize_str(item).strip() for item in interests if normalize_str(item).strip())
        if not name or not slugify(name) or not token:
            raise ConfigError(f"Invalid agent entry at index {index} in {path}")
        agents.append(
            SwarmAgent(
                name=name,
                access_token=token,
                interests=normalize_str(interests).strip(),
                mcp_server_url=normalize_str(entry.get("mcpServerUrl")).strip(),
                base_private_key=normalize_str(entry.get("basePrivateKey")).strip(),
            )
        )
    keys = [agent.key for agent in agents]
    duplicates = sorted({key for key in keys if keys.count(key) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate agent names in {path}: {', '.join(duplicates)}")
    return agents


def build_agent_env(
    agent: SwarmAgent,
    base_env: Mapping[str, str],
    checkpoint_dir: Path = DEFAULT_CHECKPOINT_DIR,
    log_dir: Path = DEFAULT_LOG_DIR,
) -> Dict[str, str]:
    """Environment for one agent process: own salt, memory file and log dir."""
    env = dict(base_env)
    for swarm_key, agent_key in SWARM_PASSTHROUGH.items():
        if swarm_key in base_env:
            env[agent_key] = base_env[swarm_key]
    key = agent.key
    env.update(
        {
            "AGENT_NAME": agent.name,
            "AGENT_ACCESS_TOKEN": agent.access_token,
            "AGENT_DECISION_SALT": key,
            "AGENT_INTERESTS": agent.interests,
            "REAL_AGENT_MEMORY_FILE": str(Path(checkpoint_dir) / f"{key}.memory.json"),
            "AGENT_LOG_DIR": str(Path(log_dir) / key),
        }
    )
    if agent.mcp_server_url:
        env["PLATFORM_MCP_URL"] = agent.mcp_server_url
    if agent.base_private_key:
        env["AGENT_BASE_PRIVATE_KEY"] = agent.base_private_key
    else:
        env.pop("AGENT_BASE_PRIVATE_KEY", None)
    return env


def spawn_agent(
    agent: SwarmAgent,
    mode: str,
    base_env: Mapping[str, str],
    checkpoint_dir: Path,
    log_dir: Path,
) -> SwarmProcess:
    env = build_agent_env(agent, base_env, checkpoint_dir, log_dir)
    log_path = Path(log_dir) / f"{agent.key}-{mode}.out"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_file = log_path.open("w", encoding="utf-8")
    proc = subprocess.Popen(
        [sys.executable, "-m", "wikaipedia.cli", mode],
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=log_file,
        stderr=subprocess.STDOUT,
    )
    return SwarmProcess(
        agent=agent,
        process=proc,
        log_path=log_path,
        memory_path=Path(env["REAL_AGENT_MEMORY_FILE"]),
        log_file=log_file,
    )


def terminate_all(children: List[SwarmProcess], logger: logging.Logger, grace_seconds: float = TERMINATE_GRACE_SECONDS) -> None:
    for child in children:
        if child.process.poll() is None:
            child.process.terminate()
    for child in children:
        try:
            child.process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Agent did not stop in time agent=%s pid=%s; killing.", child.agent.key, child.process.pid)
            child.process.kill()
            child.process.wait()
        if child.log_file is not None:
            child.log_file.close()
        logger.info("[%s] exited code=%s", child.agent.key, child.process.returncode)


def run_swarm(
    agents: List[SwarmAgent],
    mode: str,
    logger: logging.Logger,
    stop_event: threading.Event,
    base_env: Optional[Mapping[str, str]] = None,
    checkpoint_dir: Path = DEFAULT_CHECKPOINT_DIR,
    log_dir: Path = DEFAULT_LOG_DIR,
    poll_seconds: float = 2.0,
) -> int:
    """Start one process per agent and supervise them until stopped.

    Returns the number of agents that exited on their own before the stop.
    """
    if mode not in VALID_MODES:
        raise ConfigError(f"Unknown swarm mode {mode!r}; expected one of {sorted(VALID_MODES)}")
    env = dict(os.environ if base_env is None else base_env)
    Path(checkpoint_dir).mkdir(parents=True, exist_ok=True)
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    children: List[SwarmProcess] = []
    exited: Dict[str, int] = {}
    try:
        for agent in agents:
            child = spawn_agent(agent, mode, env, checkpoint_dir, log_dir)
            children.append(child)
            logger.info(
                "[%s] ready pid=%s memory=%s log=%s interests=%s",
                agent.key,
                child.process.pid,
                child.memory_path,
                child.log_path,
                agent.interests or "none",
            )
        logger.info("Started swarm agents=%s mode=%s. Press Ctrl+C to stop.", len(children), mode)

        while not stop_event.is_set():
            for child in children:
                code = child.process.poll()
                if code is not None and child.agent.key not in exited:
                    exited[child.agent.key] = code
                    logger.warning("[%s] exited early code=%s log=%s", child.agent.key, code, child.log_path)
            if children and len(exited) == len(children):
                logger.warning("All swarm agents exited; stopping.")
                break
            stop_event.wait(poll_seconds)
    finally:
        logger.info("Shutting down swarm agents=%s", len(children))
        terminate_all(children, logger)
    return len(exited)
