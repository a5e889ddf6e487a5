import json
import tempfile
import unittest
from pathlib import Path

from wikaipedia.agent.trace_log import append_trace, read_trace


class TraceLogTests(unittest.TestCase):
    def test_append_writes_one_json_line_per_event(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "logs" / "trace.jsonl"
            row = append_trace(path, "Abstain", {"questionId": "q1", "confidence": 0.4, "topics": ["crypto"]})
            append_trace(path, "answered", {"questionId": "q2", "answer": "body"})

            lines = path.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 2)
            first = json.loads(lines[0])
            self.assertEqual(first["event"], "abstain")
            self.assertEqual(first["confidence"], 0.4)
            self.assertEqual(first["topics"], ["crypto"])
            self.assertIn("ts", row)

    def test_long_text_is_clipped_by_field_kind(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "trace.jsonl"
            row = append_trace(path, "answered", {"reason": "r" * 900, "answer": "a" * 9000, "ids": list(range(50))})
        self.assertEqual(len(row["reason"]), 400)
        self.assertEqual(len(row["answer"]), 5000)
        self.assertEqual(len(row["ids"]), 20)

    def test_read_trace_tails_filters_and_skips_bad_lines(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "trace.jsonl"
            for i in range(5):
                append_trace(path, "abstain" if i % 2 else "answered", {"questionId": f"q{i}"})
            with path.open("a", encoding="utf-8") as f:
                f.write("{not json\n")

            self.assertEqual([r["questionId"] for r in read_trace(path, limit=2)], ["q3", "q4"])
            self.assertEqual([r["questionId"] for r in read_trace(path, event="abstain")], ["q1", "q3"])
            self.assertEqual(read_trace(Path(tmp) / "missing.jsonl"), [])


if __name__ == "__main__":
    unittest.main()
