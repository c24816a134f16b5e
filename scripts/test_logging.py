from __future__ import annotations

import json
import logging
import unittest

from arb_agent.bot_runtime.logging import JsonFormatter
from arb_agent.common import guarded_call, log_event, sanitize_text


class _CaptureHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(JsonFormatter())
        self.lines: list[dict[str, object]] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.lines.append(json.loads(self.format(record)))


class SanitizeTests(unittest.TestCase):
    def test_query_strings_are_dropped(self) -> None:
        text = "GET https://quotes.example.com/v1/quote?apiKey=abc123&tokenIn=0x0 failed"
        self.assertEqual(sanitize_text(text), "GET https://quotes.example.com/v1/quote failed")

    def test_rpc_path_keys_are_masked(self) -> None:
        text = "rpc=https://eth-sepolia.g.alchemy.com/v2/AbCdEfGhIjKlMnOpQrSt."
        self.assertEqual(sanitize_text(text), "rpc=https://eth-sepolia.g.alchemy.com/v2/***.")

    def test_key_assignments_are_masked(self) -> None:
        self.assertEqual(sanitize_text("api_key=abc123, other=1"), "api_key=***, other=1")
        self.assertEqual(sanitize_text("PRIVATE_KEY: 0xdeadbeef"), "PRIVATE_KEY: ***")

    def test_tx_hashes_are_kept(self) -> None:
        tx_hash = "0x" + "ab" * 32
        self.assertEqual(sanitize_text(f"submitted {tx_hash}"), f"submitted {tx_hash}")


class LogEventTests(unittest.TestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("test.log_event")
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False
        self.handler = _CaptureHandler()
        self.logger.handlers = [self.handler]

    def test_structured_fields_are_emitted_and_sanitised(self) -> None:
        log_event(
            self.logger,
            level="warning",
            event="quote_retry",
            message="Retrying https://quotes.example.com/q?api_key=zzz",
            attempt=2,
            details={"url": "https://rpc.example.com/v3/0123456789abcdef0123"},
        )

        (line,) = self.handler.lines
        self.assertEqual(line["level"], "WARNING")
        self.assertEqual(line["event"], "quote_retry")
        self.assertEqual(line["attempt"], 2)
        self.assertEqual(line["message"], "Retrying https://quotes.example.com/q")
        self.assertEqual(line["details"], {"url": "https://rpc.example.com/v3/***"})


class GuardedCallTests(unittest.IsolatedAsyncioTestCase):
    async def test_failure_is_logged_and_default_returned(self) -> None:
        logger = logging.getLogger("test.guarded_call")
        logger.propagate = False
        handler = _CaptureHandler()
        logger.handlers = [handler]

        async def fail() -> int:
            raise RuntimeError("redis gone")

        result = await guarded_call(fail, logger=logger, event="write_failed", message="Write failed", default=-1)

        self.assertEqual(result, -1)
        self.assertEqual(handler.lines[0]["error"], "redis gone")
        self.assertEqual(handler.lines[0]["error_type"], "RuntimeError")

    async def test_reraise(self) -> None:
        logger = logging.getLogger("test.guarded_call.reraise")
        logger.propagate = False
        logger.handlers = [logging.NullHandler()]

        def fail() -> None:
            raise ValueError("bad")

        with self.assertRaises(ValueError):
            await guarded_call(
                fail,
                logger=logger,
                event="x",
                message="x",
                reraise=True,
            )


if __name__ == "__main__":
    unittest.main()
