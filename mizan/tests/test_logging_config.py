import io
import json
import logging
import sys
import unittest
from decimal import Decimal

from mizan.logging_config import (
    REDACTED,
    StructuredFormatter,
    TextFormatter,
    configure_logging,
    correlation_scope,
    get_correlation_id,
    get_logger,
    redact,
    reset_logging,
)


class LoggingConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_logging()
        self.stream = io.StringIO()

    def tearDown(self) -> None:
        reset_logging()

    def test_get_logger_namespaces_names(self) -> None:
        self.assertEqual(get_logger("reports").name, "mizan.reports")
        self.assertEqual(get_logger("mizan.reports").name, "mizan.reports")

    def test_correlation_scope_binds_and_resets(self) -> None:
        self.assertIsNone(get_correlation_id())
        with correlation_scope("req-1") as value:
            self.assertEqual(value, "req-1")
            self.assertEqual(get_correlation_id(), "req-1")
        self.assertIsNone(get_correlation_id())
        with correlation_scope() as generated:
            self.assertEqual(len(generated), 32)

    def test_redact_masks_money_and_secrets(self) -> None:
        cleaned = redact({"amount": Decimal("5"), "nested": {"api_key": "x"}, "account_id": 3})

        self.assertEqual(cleaned, {"amount": REDACTED, "nested": {"api_key": REDACTED}, "account_id": 3})

    def test_structured_formatter_emits_json_line(self) -> None:
        configure_logging(level="DEBUG", stream=self.stream)

        with correlation_scope("abc123"):
            get_logger("reports").info("Report built", extra={"workspace_id": 4, "balance": Decimal("9")})

        payload = json.loads(self.stream.getvalue().strip())
        self.assertEqual(payload["message"], "Report built")
        self.assertEqual(payload["logger"], "mizan.reports")
        self.assertEqual(payload["level"], "INFO")
        self.assertEqual(payload["correlation_id"], "abc123")
        self.assertEqual(payload["workspace_id"], 4)
        self.assertEqual(payload["balance"], REDACTED)

    def test_text_formatter(self) -> None:
        configure_logging(fmt="text", stream=self.stream)

        get_logger("fx").warning("Using expired FX rate", extra={"base": "EUR"})

        line = self.stream.getvalue().strip()
        self.assertTrue(line.startswith("[WARNING] mizan.fx | Using expired FX rate"))
        self.assertIn("base=EUR", line)

    def test_configure_logging_is_idempotent(self) -> None:
        configure_logging(stream=self.stream)
        configure_logging(stream=self.stream)

        self.assertEqual(len(logging.getLogger("mizan").handlers), 1)

    def test_exception_details_are_included(self) -> None:
        record = logging.LogRecord("mizan.fx", logging.ERROR, __file__, 1, "boom", (), None)
        try:
            raise RuntimeError("upstream down")
        except RuntimeError:
            record.exc_info = sys.exc_info()

        payload = json.loads(StructuredFormatter().format(record))
        self.assertEqual(payload["exc_type"], "RuntimeError")
        self.assertIn("upstream down", TextFormatter().format(record))


if __name__ == "__main__":
    unittest.main()
