"""
Structured logging and payload sanitization.
"""

from unittest.mock import patch

from util.logging import BIOMETRIC_FIELDS, audit_event, logger, sanitize_payload


class TestSanitizePayload:

    def test_biometric_fields_always_redacted(self):
        payload = {"vector": [0.1, 0.2], "case_id": "case-1", "nested": {"embedding": [0.3]}}
        sanitized = sanitize_payload(payload, reveal_sensitive=True)
        assert sanitized["vector"] == "[REDACTED]"
        assert sanitized["nested"]["embedding"] == "[REDACTED]"
        assert sanitized["case_id"] == "case-1"

    def test_custom_sensitive_fields(self):
        sanitized = sanitize_payload({"court_order_ref": "CO-1", "reason": "x"},
                                     sensitive_fields=["court_order_ref"])
        assert sanitized["court_order_ref"] == "[REDACTED]"
        assert sanitized["reason"] == "x"
        revealed = sanitize_payload({"court_order_ref": "CO-1"}, reveal_sensitive=True,
                                    sensitive_fields=["court_order_ref"])
        assert revealed["court_order_ref"] == "CO-1"

    def test_long_strings_truncated(self):
        assert sanitize_payload("a" * 150) == "a" * 100 + "..."

    def test_long_lists_truncated(self):
        sanitized = sanitize_payload(list(range(25)))
        assert sanitized[:20] == list(range(20))
        assert sanitized[-1] == "... 5 more"

    def test_query_vector_is_biometric(self):
        assert "query_vector" in BIOMETRIC_FIELDS


class TestAuditEvent:

    @patch.object(logger, 'log_operation')
    def test_audit_event_sanitizes(self, mock_log):
        audit_event("access.denied", {"requester_id": "u1"}, {"vector": [1.0], "reason": "minor_protection"})
        operation, status, details = mock_log.call_args[0]
        assert operation == "access_denied"
        assert status == "audit"
        assert details["requester_id"] == "u1"
        assert details["payload"]["vector"] == "[REDACTED]"
        assert details["payload"]["reason"] == "minor_protection"

    @patch.object(logger, 'log_operation')
    def test_gate_decision_logged(self, mock_log):
        logger.log_gate_decision("u1", "citizen", "match:q1:case-1", "allow_redacted", "minor_protection")
        assert mock_log.called

    @patch.object(logger, 'log_operation')
    def test_validation_error_logged_truncated(self, mock_log):
        logger.log_validation_error("POST /matches", ["x" * 300])
        operation, status, details = mock_log.call_args[0]
        assert operation == "POST /matches.validation"
        assert status == "rejected"
        assert details["error_count"] == 1
        assert len(details["errors"][0]) == 100
