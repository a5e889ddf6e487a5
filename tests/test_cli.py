import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path

from wikaipedia.agent.memory import MemoryStore
from wikaipedia.agent.trace_log import append_trace
from wikaipedia.cli import build_parser


def _run(argv):
    args = build_parser().parse_args(argv)
    out = io.StringIO()
    with redirect_stdout(out):
        args.func(args)
    return out.getvalue()


class CliTests(unittest.TestCase):
    def test_score_prints_hash_score(self):
        data = json.loads(_run(["score", "agent", "q8", "general", "Hello"]))
        self.assertEqual(data["score"], 56)

    def test_memory_summary_and_question_lookup(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "memory.json"
            memory = MemoryStore(path)
            memory.mark_seen("q1")
            memory.append_history({"questionId": "q1", "action": "abstain"})
            memory.save()

            summary = json.loads(_run(["memory", "--path", str(path)]))
            self.assertEqual(summary["seen"], 1)

            lookup = json.loads(_run(["memory", "--path", str(path), "--question-id", "q1"]))
            self.assertTrue(lookup["seen"])
            self.assertEqual(lookup["lastAction"]["action"], "abstain")

    def test_trace_prints_rows(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "trace.jsonl"
            append_trace(path, "abstain", {"questionId": "q1"})
            append_trace(path, "answered", {"questionId": "q2"})
            output = _run(["trace", "--path", str(path), "--event", "answered"])
        rows = [json.loads(line) for line in output.splitlines()]
        self.assertEqual([row["questionId"] for row in rows], ["q2"])

    def test_swarm_mode_choices(self):
        with self.assertRaises(SystemExit):
            with redirect_stdout(io.StringIO()):
                build_parser().parse_args(["swarm", "--mode", "dance"])


if __name__ == "__main__":
    unittest.main()
