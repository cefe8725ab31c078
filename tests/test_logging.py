"""Tests for log redaction and correlation ids."""

import structlog

from bookpath.logging import (
    _redact_pii,
    email_fingerprint,
    get_correlation_id,
    set_correlation_id,
)


class TestRedaction:
    """Tests for the PII masking processor."""

    def test_sensitive_strings_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "x", "password": "hunter2-long", "refresh_token": "abc.def.ghi"},
        )

        assert event["password"] == "hu***ng"
        assert event["refresh_token"] == "ab***hi"

    def test_digests_numbers_and_other_keys_pass_through(self):
        digest = email_fingerprint("Reader@Example.com")
        event = _redact_pii(
            None,
            "info",
            {"email_hash": digest, "token_version": 3, "user_id": "u-123456"},
        )

        assert event == {"email_hash": digest, "token_version": 3, "user_id": "u-123456"}

    def test_fingerprint_ignores_case_and_whitespace(self):
        assert email_fingerprint(" Reader@Example.com ") == email_fingerprint("reader@example.com")
        assert email_fingerprint(None) is None


class TestCorrelationId:
    """Tests for the per-request correlation id."""

    def test_given_id_is_bound(self):
        assert set_correlation_id("req-1") == "req-1"
        assert get_correlation_id() == "req-1"
        structlog.contextvars.clear_contextvars()

    def test_missing_id_is_generated(self):
        cid = set_correlation_id(None)

        assert len(cid) == 36
        assert get_correlation_id() == cid
        structlog.contextvars.clear_contextvars()
