import logging
import tempfile
import unittest

from wikaipedia.agent.actions import ActionDispatcher
from wikaipedia.agent.memory import MemoryStore
from wikaipedia.agent.wikis import discovery_queries, parse_wikis, relevance_candidates, run_wiki_discovery
from wikaipedia.platform_client import PlatformError

from fakes import FakeClient, make_config, with_policy


class WikiParsingTests(unittest.TestCase):
    def test_parse_wikis_normalizes_ids_and_membership(self):
        payload = {
            "wikis": [
                {"id": "W/Rust", "displayName": "Rust", "joined": True},
                {"slug": "python", "description": "Snakes and code"},
                "bad",
                {},
            ]
        }
        wikis = parse_wikis(payload)
        self.assertEqual([w["id"] for w in wikis], ["rust", "python"])
        self.assertTrue(wikis[0]["joined"])
        self.assertFalse(wikis[1]["joined"])

    def test_queries_are_interests_plus_winning_topics(self):
        with tempfile.TemporaryDirectory() as tmp:
            cfg = with_policy(make_config(tmp), interests=("rust",))
            memory = MemoryStore(cfg.memory_path)
            memory.topic_performance["books"] = {"win": 2, "loss": 1, "seen": 3}
            memory.topic_performance["crypto"] = {"win": 0, "loss": 1, "seen": 1}
            self.assertEqual(discovery_queries(cfg, memory), ["rust", "books"])

    def test_relevance_skips_joined_and_irrelevant(self):
        wikis = [
            {"id": "rust", "displayName": "", "description": "", "joined": False},
            {"id": "rust-lang", "displayName": "", "description": "", "joined": True},
            {"id": "python", "displayName": "", "description": "", "joined": False},
        ]
        self.assertEqual(relevance_candidates(wikis, ["rust"]), [("rust", 100)])


class WikiDiscoveryTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.logger = logging.getLogger("wikaipedia.agent")

    def tearDown(self):
        self._tmp.cleanup()

    def _run(self, cfg, client):
        memory = MemoryStore(cfg.memory_path)
        dispatcher = ActionDispatcher(cfg, client, self.logger)
        return run_wiki_discovery(cfg, client, memory, dispatcher, self.logger)

    def test_joins_relevant_wiki(self):
        cfg = with_policy(make_config(self._tmp.name, enable_wiki_discovery=True), interests=("rust",))
        client = FakeClient(
            wikis={"wikis": [{"id": "rust"}, {"id": "python"}, {"id": "general", "joined": True}]}
        )
        result = self._run(cfg, client)
        self.assertEqual(result.joined, "rust")
        self.assertIsNone(result.left)
        self.assertEqual(client.calls_named("join_wiki")[0]["idempotency_key"], "join-rust")

    def test_leaves_when_over_subscription_cap(self):
        cfg = make_config(self._tmp.name, enable_wiki_discovery=True, max_wiki_subscriptions=3)
        joined = [{"id": wiki_id, "joined": True} for wiki_id in ("general", "books", "crypto", "rust")]
        client = FakeClient(wikis={"wikis": joined})
        result = self._run(cfg, client)
        self.assertEqual(result.join_verdict.reason, "no_candidates")
        self.assertEqual(result.left, "rust")
        self.assertEqual(client.calls_named("leave_wiki")[0]["idempotency_key"], "leave-rust")

    def test_join_at_cap_never_leaves_the_new_wiki(self):
        cfg = with_policy(
            make_config(self._tmp.name, enable_wiki_discovery=True, max_wiki_subscriptions=2),
            salt="s4",
            interests=("zeta",),
        )
        client = FakeClient(
            wikis={"wikis": [{"id": "alpha", "joined": True}, {"id": "beta", "joined": True}, {"id": "zeta"}]}
        )
        result = self._run(cfg, client)
        self.assertEqual(result.joined, "zeta")
        self.assertEqual(result.left, "beta")
        self.assertEqual([call["wiki_id"] for call in client.calls_named("leave_wiki")], ["beta"])

    def test_disabled_or_failing_discovery_does_nothing(self):
        client = FakeClient()
        self._run(make_config(self._tmp.name), client)
        self.assertEqual(client.calls, [])

        def _broken():
            raise PlatformError("wiki list down")

        client.list_wikis = _broken
        with self.assertLogs("wikaipedia.agent", level="WARNING"):
            result = self._run(make_config(self._tmp.name, enable_wiki_discovery=True), client)
        self.assertIsNone(result.joined)
        self.assertEqual(client.calls, [])


if __name__ == "__main__":
    unittest.main()
