import json
import unittest
from unittest.mock import MagicMock, patch

import httpx

from src.core.logger import SeqSink, _sanitize_value, log_patcher


class DummyConnection:
    """Relies on the default object.__repr__ (containing 'at 0x...')."""


async def dummy_coroutine() -> None:
    pass


class TestLoggerSanitization(unittest.TestCase):
    """Test suite for Loguru payload sanitization."""

    def test_sanitize_value_primitives_and_collections(self) -> None:
        raw_data = {"email": "ann@acme.com", "privileges": ["list_requests"], "scope": {"branch_id": 2}}
        sanitized = _sanitize_value(raw_data)

        self.assertEqual(sanitized, raw_data)
        self.assertIsInstance(sanitized["privileges"], list)

    def test_sanitize_value_frozenset(self) -> None:
        self.assertEqual(_sanitize_value(frozenset({"revoke_user"})), frozenset({"revoke_user"}))

    def test_sanitize_value_memory_addresses(self) -> None:
        dummy = DummyConnection()
        self.assertIn(" at 0x", repr(dummy))

        self.assertEqual(_sanitize_value(dummy), f"[{dummy.__class__.__module__}.DummyConnection]")

    def test_sanitize_value_callables_and_coroutines(self) -> None:
        self.assertEqual(_sanitize_value(log_patcher), f"{log_patcher.__module__}.log_patcher()")
        self.assertEqual(_sanitize_value(dummy_coroutine), f"{dummy_coroutine.__module__}.dummy_coroutine()")

    def test_log_patcher_mutates_extra(self) -> None:
        dummy = DummyConnection()
        record = {"extra": {"db": dummy, "request_id": "abc"}}

        log_patcher(record)

        self.assertEqual(record["extra"]["db"], f"[{dummy.__class__.__module__}.DummyConnection]")
        self.assertEqual(record["extra"]["request_id"], "abc")


class TestSeqSink(unittest.TestCase):
    """Test suite for the synchronous HTTP sink routing JSON logs to Seq."""

    def setUp(self) -> None:
        self.sink = SeqSink("http://fake-seq:5341/", api_key="secret123", application="Gateway")

        self.mock_loguru_json = json.dumps(
            {
                "record": {
                    "time": {"repr": "2026-02-27 15:00:00"},
                    "level": {"name": "WARNING"},
                    "message": "Denied 'revoke_user'",
                    "extra": {"request_id": "req-1"},
                    "function": "authorize",
                    "module": "policy",
                    "line": 42,
                    "exception": None,
                }
            }
        )

    @patch("src.core.logger.httpx.Client.post")
    def test_seq_sink_write_success(self, mock_post: MagicMock) -> None:
        mock_post.return_value = MagicMock(status_code=201)

        self.sink.write(self.mock_loguru_json)

        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "http://fake-seq:5341/api/events/raw")
        self.assertEqual(kwargs["headers"]["X-Seq-ApiKey"], "secret123")

        event = kwargs["json"]["Events"][0]
        self.assertEqual(event["Level"], "WARNING")
        self.assertEqual(event["Properties"]["request_id"], "req-1")
        self.assertEqual(event["Properties"]["Application"], "Gateway")
        self.assertNotIn("Exception", event)

    @patch("src.core.logger.sys.stderr.write")
    @patch("src.core.logger.httpx.Client.post")
    def test_seq_sink_http_error_fallback(self, mock_post: MagicMock, mock_stderr_write: MagicMock) -> None:
        mock_post.return_value = MagicMock(status_code=401, text="Unauthorized")

        self.sink.write(self.mock_loguru_json)

        mock_stderr_write.assert_called_once()
        self.assertIn("Seq API Error 401", mock_stderr_write.call_args[0][0])

    @patch("src.core.logger.sys.stderr.write")
    @patch("src.core.logger.httpx.Client.post")
    def test_seq_sink_transport_error_never_raises(self, mock_post: MagicMock, mock_stderr_write: MagicMock) -> None:
        mock_post.side_effect = httpx.ConnectError("connection refused")

        self.sink.write(self.mock_loguru_json)

        self.assertIn("Failed to send log to Seq", mock_stderr_write.call_args[0][0])


if __name__ == "__main__":
    unittest.main()
