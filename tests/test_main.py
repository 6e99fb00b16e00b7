"""
Tests for relay.main — logging setup and the log redaction processor.

Covers:
- Values under key-like names are masked outright
- Provider-key shaped strings are masked inside any value
- Long task/prompt/stderr values are clipped
- Non-string values pass through untouched
- configure_logging is idempotent
"""

from __future__ import annotations

import relay.main as main_mod
from relay.main import _redact_sensitive_fields, configure_logging


def _redact(**event) -> dict:
    return _redact_sensitive_fields(None, "info", dict(event))


class TestRedaction:
    def test_key_fields_masked(self) -> None:
        assert _redact(api_key="abc", ANTHROPIC_API_KEY="xyz")["api_key"] == "[REDACTED]"
        assert _redact(ANTHROPIC_API_KEY="xyz")["ANTHROPIC_API_KEY"] == "[REDACTED]"

    def test_empty_key_field_left_alone(self) -> None:
        assert _redact(api_key="")["api_key"] == ""

    def test_anthropic_key_in_text(self) -> None:
        event = _redact(error="auth failed for sk-ant-REDACTED")
        assert event["error"] == "auth failed for [REDACTED]"

    def test_xai_and_google_keys(self) -> None:
        event = _redact(
            a="xai-ABCDEFGHIJKLMNOPQRST",
            b="AIzaSyA1234567890abcdefghijkl",
        )
        assert event["a"] == "[REDACTED]"
        assert event["b"] == "[REDACTED]"

    def test_short_sk_prefix_kept(self) -> None:
        assert _redact(path="sk-short")["path"] == "sk-short"

    def test_long_task_truncated(self) -> None:
        event = _redact(task="x" * 500, note="y" * 500)
        assert event["task"] == "x" * 120 + "... [truncated]"
        assert event["note"] == "y" * 500

    def test_non_strings_untouched(self) -> None:
        event = _redact(count=3, tools=["read"], event="runner.start")
        assert event == {"count": 3, "tools": ["read"], "event": "runner.start"}


class TestConfigureLogging:
    def test_idempotent(self, monkeypatch) -> None:
        calls = []
        monkeypatch.setattr(main_mod, "_logging_configured", False)
        monkeypatch.setattr(main_mod.structlog, "configure", lambda **kw: calls.append(kw))
        configure_logging()
        configure_logging(verbose=True)
        assert len(calls) == 1
