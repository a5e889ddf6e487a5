import argparse
import json
import threading
from pathlib import Path
from typing import Any

from .agent.config import ConfigError, load_config, validate_config
from .agent.logging_utils import setup_logging
from .agent.memory import last_action, load_memory
from .agent.policy import hash_score
from .agent.runner import build_engine, install_signal_handlers
from .agent.swarm import DEFAULT_CHECKPOINT_DIR, load_swarm_agents, run_swarm, swarm_config_path
from .agent.trace_log import read_trace
from .platform_client import PlatformAuthError


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _engine_from_env():
    cfg = validate_config(load_config())
    logger = setup_logging(cfg)
    stop_event = threading.Event()
    install_signal_handlers(stop_event, logger)
    return build_engine(cfg, logger, stop_event)


def cmd_run(args: argparse.Namespace) -> None:
    """Pull mode: scan open questions every loop interval until stopped.

    Examples:

        python -m wikaipedia.cli run
        python -m wikaipedia.cli run --iterations 1
    """
    engine = _engine_from_env()
    engine.run_loop(max_iterations=args.iterations)


def cmd_listen(args: argparse.Namespace) -> None:
    """Push mode: backfill existing posts, then follow the question stream."""
    engine = _engine_from_env()
    engine.listen(reconnect=not args.no_reconnect)


def cmd_memory(args: argparse.Namespace) -> None:
    path = Path(args.path) if args.path else load_config().memory_path
    memory = load_memory(path)
    if args.question_id:
        print_json({"questionId": args.question_id, "seen": memory.has_seen(args.question_id), "lastAction": last_action(memory, args.question_id)})
        return
    print_json(memory.summary(history_limit=args.history))


def cmd_trace(args: argparse.Namespace) -> None:
    path = Path(args.path) if args.path else load_config().trace_path
    for row in read_trace(path, limit=args.limit, event=args.event):
        print(json.dumps(row, sort_keys=True))


def cmd_score(args: argparse.Namespace) -> None:
    """Print the policy hash score of the given parts, e.g. salt, question id, topic, header."""
    print_json({"parts": args.parts, "score": hash_score(*args.parts)})


def cmd_swarm(args: argparse.Namespace) -> None:
    cfg = load_config()
    logger = setup_logging(cfg)
    config_path = Path(args.config).resolve() if args.config else swarm_config_path()
    agents = load_swarm_agents(config_path)
    logger.info("Swarm config path=%s agents=%s mode=%s", config_path, len(agents), args.mode)
    stop_event = threading.Event()
    install_signal_handlers(stop_event, logger)
    run_swarm(
        agents,
        mode=args.mode,
        logger=logger,
        stop_event=stop_event,
        checkpoint_dir=Path(args.checkpoint_dir),
        log_dir=cfg.log_dir,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Autonomous WikAIpedia market agent.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    p_run = subparsers.add_parser("run", help="Run the pull loop")
    p_run.add_argument("--iterations", type=int, default=None, help="Stop after this many iterations")
    p_run.set_defaults(func=cmd_run)

    # listen
    p_listen = subparsers.add_parser("listen", help="Follow the question event stream")
    p_listen.add_argument("--no-reconnect", action="store_true", help="Exit when the stream ends")
    p_listen.set_defaults(func=cmd_listen)

    # memory
    p_memory = subparsers.add_parser("memory", help="Show the agent memory summary")
    p_memory.add_argument("--path", help="Memory file (defaults to REAL_AGENT_MEMORY_FILE)")
    p_memory.add_argument("--history", type=int, default=10, help="Recent history entries to show")
    p_memory.add_argument("--question-id", help="Show what the agent last did for one question")
    p_memory.set_defaults(func=cmd_memory)

    # trace
    p_trace = subparsers.add_parser("trace", help="Tail the decision trace log")
    p_trace.add_argument("--path", help="Trace file (defaults to the log dir trace)")
    p_trace.add_argument("--limit", type=int, default=50)
    p_trace.add_argument("--event", help="Only rows with this event name")
    p_trace.set_defaults(func=cmd_trace)

    # score
    p_score = subparsers.add_parser("score", help="Print a policy hash score")
    p_score.add_argument("parts", nargs="+", help="Parts joined with '|' before hashing")
    p_score.set_defaults(func=cmd_score)

    # swarm
    p_swarm = subparsers.add_parser("swarm", help="Launch one process per configured agent")
    p_swarm.add_argument("--config", help="Swarm config JSON (defaults to OPENCLAW_SWARM_CONFIG)")
    p_swarm.add_argument("--mode", choices=["listen", "run"], default="listen")
    p_swarm.add_argument("--checkpoint-dir", default=str(DEFAULT_CHECKPOINT_DIR))
    p_swarm.set_defaults(func=cmd_swarm)

    return parser


def main() -> None:
    try:
        parser = build_parser()
        args = parser.parse_args()
        args.func(args)
    except (ConfigError, PlatformAuthError) as e:
        raise SystemExit(str(e))
    except KeyboardInterrupt:
        raise SystemExit(130)
    except Exception as e:
        raise SystemExit(f"Error: {e}")


if __name__ == "__main__":
    main()
