import json
import logging
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from wikaipedia.agent.config import ConfigError
from wikaipedia.agent.swarm import SwarmAgent, build_agent_env, load_swarm_agents, run_swarm, slugify


class _FakeProcess:
    _next_pid = 1000

    def __init__(self, *args, **kwargs):
        self.args = args
        self.kwargs = kwargs
        _FakeProcess._next_pid += 1
        self.pid = _FakeProcess._next_pid
        self.returncode = None
        self.terminated = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def wait(self, timeout=None):  # noqa: ARG002
        return self.returncode

    def kill(self):
        self.returncode = -9


class SwarmConfigTests(unittest.TestCase):
    def _write(self, tmp, data):
        path = Path(tmp) / "agents.json"
        path.write_text(json.dumps(data) if not isinstance(data, str) else data, encoding="utf-8")
        return path

    def test_slugify(self):
        self.assertEqual(slugify("OpenClaw Alpha #1"), "openclaw-alpha-1")
        self.assertEqual(slugify("--x--"), "x")

    def test_load_agents(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = self._write(
                tmp,
                {
                    "agents": [
                        {"name": "Alpha Bot", "accessToken": "tok-a", "interests": ["rust", "python"]},
                        {"name": "Beta", "accessToken": "tok-b", "mcpServerUrl": "http://mcp-b.test/mcp"},
                    ]
                },
            )
            agents = load_swarm_agents(path)
        self.assertEqual([a.key for a in agents], ["alpha-bot", "beta"])
        self.assertEqual(agents[0].interests, "rust,python")
        self.assertEqual(agents[1].mcp_server_url, "http://mcp-b.test/mcp")

    def test_invalid_configs_raise(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ConfigError):
                load_swarm_agents(Path(tmp) / "missing.json")
            with self.assertRaises(ConfigError):
                load_swarm_agents(self._write(tmp, "{broken"))
            with self.assertRaises(ConfigError):
                load_swarm_agents(self._write(tmp, {"agents": []}))
            with self.assertRaises(ConfigError):
                load_swarm_agents(self._write(tmp, {"agents": [{"name": "NoToken"}]}))
            with self.assertRaisesRegex(ConfigError, "Duplicate"):
                load_swarm_agents(
                    self._write(tmp, {"agents": [{"name": "A b", "accessToken": "1"}, {"name": "a-B", "accessToken": "2"}]})
                )

    def test_agent_env_isolates_salt_memory_and_logs(self):
        agent = SwarmAgent(name="Alpha Bot", access_token="tok-a", interests="rust")
        base = {"PATH": "/usr/bin", "AGENT_BASE_PRIVATE_KEY": "shared", "OPENCLAW_SWARM_MAX_WIKIS": "2"}
        env = build_agent_env(agent, base, checkpoint_dir=Path("/ck"), log_dir=Path("/logs"))

        self.assertEqual(env["PATH"], "/usr/bin")
        self.assertEqual(env["AGENT_DECISION_SALT"], "alpha-bot")
        self.assertEqual(env["AGENT_ACCESS_TOKEN"], "tok-a")
        self.assertEqual(env["AGENT_INTERESTS"], "rust")
        self.assertEqual(env["REAL_AGENT_MEMORY_FILE"], str(Path("/ck") / "alpha-bot.memory.json"))
        self.assertEqual(env["AGENT_LOG_DIR"], str(Path("/logs") / "alpha-bot"))
        self.assertEqual(env["AGENT_MAX_WIKI_SUBSCRIPTIONS"], "2")
        self.assertNotIn("AGENT_BASE_PRIVATE_KEY", env)
        self.assertNotIn("PLATFORM_MCP_URL", env)


class RunSwarmTests(unittest.TestCase):
    @mock.patch("wikaipedia.agent.swarm.subprocess.Popen", side_effect=_FakeProcess)
    def test_spawns_one_process_per_agent_and_terminates_on_stop(self, mock_popen):
        agents = [SwarmAgent(name="Alpha", access_token="a"), SwarmAgent(name="Beta", access_token="b")]
        stop = threading.Event()
        stop.set()
        with tempfile.TemporaryDirectory() as tmp:
            exited = run_swarm(
                agents,
                mode="listen",
                logger=logging.getLogger("wikaipedia.agent"),
                stop_event=stop,
                base_env={"PATH": "/usr/bin"},
                checkpoint_dir=Path(tmp) / "ck",
                log_dir=Path(tmp) / "logs",
            )
            self.assertTrue((Path(tmp) / "logs" / "alpha-listen.out").exists())

        self.assertEqual(exited, 0)
        self.assertEqual(mock_popen.call_count, 2)
        first_cmd = mock_popen.call_args_list[0].args[0]
        self.assertEqual(first_cmd[1:], ["-m", "wikaipedia.cli", "listen"])
        self.assertEqual(mock_popen.call_args_list[1].kwargs["env"]["AGENT_DECISION_SALT"], "beta")

    def test_unknown_mode_is_rejected(self):
        with self.assertRaises(ConfigError):
            run_swarm([], mode="dance", logger=logging.getLogger("wikaipedia.agent"), stop_event=threading.Event())


if __name__ == "__main__":
    unittest.main()
