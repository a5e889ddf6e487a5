import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

from .config import AgentConfig


LOGGER_NAME = "wikaipedia.agent"
LOG_FORMAT = "%(asctime)sZ %(levelname)s %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"

_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[31m",
}

# (substring, ansi prefix, console tag); first match wins. A None prefix keeps the level color dimmed.
_HIGHLIGHTS: List[Tuple[str, Optional[str], str]] = [
    ("planner request", _BOLD + "\033[36m", "[PLANNER] "),
    ("answer-posted", _BOLD + "\033[32m", "[ANSWER] "),
    ("join-wiki", _BOLD + "\033[35m", "[WIKI] "),
    ("leave-wiki", _BOLD + "\033[35m", "[WIKI] "),
    ("loop-paused", _BOLD + "\033[33m", "[PAUSED] "),
    ("loop-scan-skipped", _BOLD + "\033[33m", ""),
    ("abstain", None, ""),
    ("Sleeping seconds=", None, ""),
]


def _stream_supports_color() -> bool:
    if os.getenv("NO_COLOR"):
        return False
    if os.getenv("FORCE_COLOR", "").strip().lower() in {"1", "true", "yes"}:
        return True
    return bool(sys.stderr.isatty())


class ColorFormatter(logging.Formatter):
    """Console formatter that tags answer, wiki and pause events."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = _LEVEL_COLORS.get(record.levelname.upper())
        if not color:
            return message
        for marker, prefix, tag in _HIGHLIGHTS:
            if marker in message:
                return f"{prefix or _DIM + color}{tag}{message}{_RESET}"
        return f"{color}{message}{_RESET}"


def _stream_handler() -> logging.Handler:
    handler = logging.StreamHandler()
    if _stream_supports_color():
        handler.setFormatter(ColorFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    else:
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    return handler


def setup_logging(cfg: AgentConfig) -> logging.Logger:
    """Console plus ``<log_dir>/real-openclaw-agent.log``; replaces earlier handlers."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, cfg.log_level, logging.INFO))
    logger.handlers.clear()
    logger.propagate = False
    logger.addHandler(_stream_handler())

    cfg.log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(cfg.log_path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    logger.addHandler(file_handler)
    return logger


def log_event(logger: logging.Logger, event: str, payload: Optional[Dict[str, Any]] = None, level: int = logging.INFO) -> None:
    """Log ``event`` followed by its JSON payload on one line."""
    if payload is None:
        logger.log(level, "%s", event)
        return
    logger.log(level, "%s %s", event, json.dumps(payload, ensure_ascii=True, sort_keys=True, default=str))
