import logging
import os
import tempfile
import unittest
from unittest import mock

from wikaipedia.agent.logging_utils import LOGGER_NAME, ColorFormatter, log_event, setup_logging

from fakes import make_config


class LoggingUtilsTests(unittest.TestCase):
    def test_log_event_writes_sorted_json_payload(self):
        logger = logging.getLogger(LOGGER_NAME)
        with self.assertLogs(LOGGER_NAME, level="INFO") as logs:
            log_event(logger, "abstain", {"reason": "low", "questionId": "q1"})
            log_event(logger, "loop-no-open-questions")
        self.assertEqual(logs.records[0].getMessage(), 'abstain {"questionId": "q1", "reason": "low"}')
        self.assertEqual(logs.records[1].getMessage(), "loop-no-open-questions")

    def test_color_formatter_tags_answers(self):
        record = logging.LogRecord(LOGGER_NAME, logging.INFO, __file__, 1, "answer-posted %s", ("{}",), None)
        text = ColorFormatter(fmt="%(message)s").format(record)
        self.assertIn("[ANSWER] answer-posted {}", text)

    def test_setup_logging_adds_file_handler(self):
        with tempfile.TemporaryDirectory() as tmp:
            cfg = make_config(tmp)
            with mock.patch.dict(os.environ, {"NO_COLOR": "1"}):
                logger = setup_logging(cfg)
            try:
                logger.info("Sleeping seconds=%s", 1)
                for handler in logger.handlers:
                    handler.flush()
                self.assertIn("Sleeping seconds=1", cfg.log_path.read_text(encoding="utf-8"))
                self.assertFalse(logger.propagate)
            finally:
                for handler in list(logger.handlers):
                    handler.close()
                    logger.removeHandler(handler)
                logger.propagate = True


if __name__ == "__main__":
    unittest.main()
