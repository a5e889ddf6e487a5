import tempfile
import threading
import unittest

from wikaipedia.agent.decision import (
    CancelledError,
    DecisionEngine,
    blend_confidence,
    clamp_bid,
    passes_final_gate,
)
from wikaipedia.agent.memory import MemoryStore
from wikaipedia.agent.planner import DecisionFormatError
from wikaipedia.platform_client import PlatformError

from fakes import FakeClient, FakePlanner, make_config, make_decision


QUESTION = {"id": "q1", "header": "Which python api client for ethereum?", "content": "Need a wallet library."}


class GateMathTests(unittest.TestCase):
    def test_blend_adds_weighted_prior(self):
        self.assertAlmostEqual(blend_confidence(0.5, 0.5), 0.59)
        self.assertEqual(blend_confidence(0.95, 1.0), 1.0)
        self.assertEqual(blend_confidence(0.05, -1.0), 0.0)

    def test_bid_is_clamped_to_four_times_default(self):
        self.assertEqual(clamp_bid(1000, 20), 80)
        self.assertEqual(clamp_bid(0, 20), 20)
        self.assertEqual(clamp_bid(35, 20), 35)

    def test_final_gate_needs_all_three_conditions(self):
        with tempfile.TemporaryDirectory() as tmp:
            cfg = make_config(tmp)
            self.assertTrue(passes_final_gate(make_decision(), 0.62, cfg))
            self.assertFalse(passes_final_gate(make_decision(), 0.59, cfg))
            self.assertFalse(passes_final_gate(make_decision(expected_roi=0.05), 0.9, cfg))
            self.assertFalse(passes_final_gate(make_decision(should_answer=False), 0.9, cfg))


class DecisionEngineTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.cfg = make_config(self._tmp.name)
        self.memory = MemoryStore(self.cfg.memory_path)
        self.client = FakeClient()

    def tearDown(self):
        self._tmp.cleanup()

    def test_prior_lifts_confidence_over_the_gate(self):
        self.memory.topic_performance["crypto"] = {"win": 4, "loss": 0, "seen": 4}
        self.memory.topic_performance["programming"] = {"win": 4, "loss": 0, "seen": 4}
        planner = FakePlanner([make_decision(confidence=0.5)])
        engine = DecisionEngine(self.cfg, self.memory, self.client, planner)

        evaluation = engine.evaluate(dict(QUESTION), {"remainingCents": 100})

        self.assertEqual(evaluation.topics, ["crypto", "programming"])
        self.assertAlmostEqual(evaluation.topic_prior, 1.0)
        self.assertAlmostEqual(evaluation.blended_confidence, 0.68)
        self.assertTrue(evaluation.should_answer)
        context = planner.decide_calls[0][1]
        self.assertEqual(context["budget"], {"remainingCents": 100})
        self.assertEqual(context["topics"], ["crypto", "programming"])

    def test_similar_posts_exclude_self_and_cap_at_three(self):
        self.client.similar = {"posts": [{"id": "q1"}] + [{"id": f"s{i}"} for i in range(5)]}
        engine = DecisionEngine(self.cfg, self.memory, self.client, FakePlanner())
        evaluation = engine.evaluate(dict(QUESTION), {})
        self.assertEqual([post["id"] for post in evaluation.similar_posts], ["s0", "s1", "s2"])

    def test_similar_search_failure_is_best_effort(self):
        self.client.similar_error = PlatformError("search down")
        engine = DecisionEngine(self.cfg, self.memory, self.client, FakePlanner())
        evaluation = engine.evaluate(dict(QUESTION), {})
        self.assertEqual(evaluation.similar_posts, [])
        self.assertTrue(evaluation.should_answer)

    def test_research_replaces_first_decision(self):
        planner = FakePlanner(
            [
                make_decision(should_answer=False, research_needed=True, reason="need evidence"),
                make_decision(reason="evidence found"),
            ]
        )
        engine = DecisionEngine(self.cfg, self.memory, self.client, planner)
        evaluation = engine.evaluate(dict(QUESTION), {})

        self.assertEqual(len(planner.decide_calls), 2)
        self.assertIn("research", planner.decide_calls[1][1])
        self.assertEqual(evaluation.decision.reason, "evidence found")
        self.assertEqual(len(evaluation.research), 1)
        research_call = self.client.calls_named("research_stackexchange")[0]
        self.assertEqual(research_call["limit"], 3)
        self.assertEqual(research_call["query"], QUESTION["header"])

    def test_research_failure_keeps_first_decision(self):
        self.client.research_error = PlatformError("stackexchange down")
        planner = FakePlanner([make_decision(research_needed=True, reason="first pass")])
        engine = DecisionEngine(self.cfg, self.memory, self.client, planner)

        with self.assertLogs("wikaipedia.agent", level="WARNING") as logs:
            evaluation = engine.evaluate(dict(QUESTION), {})

        self.assertTrue(evaluation.research_failed)
        self.assertEqual(evaluation.research, [])
        self.assertEqual(evaluation.decision.reason, "first pass")
        self.assertTrue(any("research-failed" in line for line in logs.output))

    def test_research_disabled_skips_second_pass(self):
        cfg = make_config(self._tmp.name, research_enabled=False)
        planner = FakePlanner([make_decision(research_needed=True)])
        DecisionEngine(cfg, self.memory, self.client, planner).evaluate(dict(QUESTION), {})
        self.assertEqual(len(planner.decide_calls), 1)
        self.assertNotIn("research_stackexchange", self.client.names())

    def test_malformed_decision_propagates(self):
        planner = FakePlanner(error=DecisionFormatError("Decision response was not valid JSON."))
        engine = DecisionEngine(self.cfg, self.memory, self.client, planner)
        with self.assertRaises(DecisionFormatError):
            engine.evaluate(dict(QUESTION), {})

    def test_every_decision_is_audited_and_audit_failure_is_swallowed(self):
        planner = FakePlanner([make_decision(should_answer=False)])
        engine = DecisionEngine(self.cfg, self.memory, self.client, planner)
        evaluation = engine.evaluate(dict(QUESTION), {})
        audit = self.client.calls_named("log_agent_event")[0]
        self.assertEqual(audit["event_type"], "decision")
        self.assertEqual(audit["payload"]["questionId"], "q1")
        self.assertFalse(audit["payload"]["shouldAnswer"])
        self.assertFalse(evaluation.should_answer)

        self.client.audit_error = PlatformError("audit down")
        engine.evaluate(dict(QUESTION), {})

    def test_dry_run_does_not_write_audit_event(self):
        cfg = make_config(self._tmp.name, dry_run=True)
        DecisionEngine(cfg, self.memory, self.client, FakePlanner()).evaluate(dict(QUESTION), {})
        self.assertNotIn("log_agent_event", self.client.names())

    def test_stop_token_cancels_between_stages(self):
        stop = threading.Event()
        planner = FakePlanner()
        engine = DecisionEngine(self.cfg, self.memory, self.client, planner, stop_event=stop)
        stop.set()
        with self.assertRaises(CancelledError):
            engine.evaluate(dict(QUESTION), {})
        self.assertEqual(planner.decide_calls, [])

    def test_bid_for_uses_clamped_decision_bid(self):
        planner = FakePlanner([make_decision(bid_amount_cents=1000)])
        engine = DecisionEngine(self.cfg, self.memory, self.client, planner)
        evaluation = engine.evaluate(dict(QUESTION), {})
        self.assertEqual(engine.bid_for(evaluation), 80)
        self.assertEqual(engine.compose_answer(evaluation), planner.answer)


if __name__ == "__main__":
    unittest.main()
