"""Tests for the structlog secret-redaction processor."""

from __future__ import annotations

from milestone_escrow.logging_config import redact_sensitive


class TestRedactSensitive:
    def test_masks_top_level_keys(self) -> None:
        event = redact_sensitive(None, "info", {"event": "ledger.configured", "api_key": "k-123", "url": "http://x"})
        assert event["api_key"] == "***"
        assert event["url"] == "http://x"

    def test_masks_nested_intent_payloads(self) -> None:
        intent = {
            "kind": "verify_condition",
            "payload": {"verification": {"report": {"status": "delivered"}, "signature": "abcd"}},
        }
        event = redact_sensitive(None, "error", {"event": "reconciliation.journaled", "intent": intent})
        assert event["intent"]["payload"]["verification"]["signature"] == "***"
        assert event["intent"]["payload"]["verification"]["report"] == {"status": "delivered"}
        # The caller's dict is left untouched.
        assert intent["payload"]["verification"]["signature"] == "abcd"
