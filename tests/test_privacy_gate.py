"""
Privacy access gate tests - rule order, redaction, log-then-release and integrity hold.
"""

import time
from unittest.mock import patch

import pytest

from reunite.core.cases import CaseDirectory
from reunite.core.consent import ConsentRegistry
from reunite.core.errors import ExternalTimeout, IntegrityFault, ValidationError
from reunite.core.privacy import ROLE_RULES, PrivacyAccessGate, parse_role
from reunite.core.schema import (
    AccessRequest, CaseProfile, ConsentRecord, Decision, GateState, MatchCandidate, MatchExplanation,
    ReasonCategory, RequesterRole, utcnow,
)


@pytest.fixture
def consent(ledger, db_path):
    return ConsentRegistry(ledger, db_path)


@pytest.fixture
def cases(db_path):
    return CaseDirectory(db_path)


@pytest.fixture
def gate(ledger, consent, cases):
    return PrivacyAccessGate(ledger, consent, cases)


def _request(role, case_id="case-1", deep=False, court_order=None, requester="user-1"):
    return AccessRequest(
        requester_id=requester,
        requester_role=role,
        resource_ref=f"case:{case_id}:view:{role}",
        case_id=case_id,
        deep_search=deep,
        court_order_ref=court_order,
    )


def _candidate(case_id="case-1"):
    return MatchCandidate(
        query_id="q1",
        candidate_case_id=case_id,
        similarity_score=0.93,
        secondary_signals={},
        composite_confidence=0.93,
        explanation=MatchExplanation(contributing_regions={"periocular": 0.6}, contributing_signals={}),
    )


class TestMinorProtection:

    @pytest.mark.parametrize("role", [RequesterRole.CITIZEN, RequesterRole.NGO])
    def test_minor_without_consent_is_redacted(self, gate, consent, ledger, role):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=True))
        request = _request(role)

        decision = gate.evaluate(request)
        assert decision.decision == Decision.ALLOW_REDACTED
        assert decision.reason == ReasonCategory.MINOR_PROTECTION
        assert request.state == GateState.ALLOWED_REDACTED

        disclosed = gate.redact(_candidate(), decision)
        assert disclosed.vector_withheld
        assert disclosed.vector is None
        assert disclosed.faces_blurred
        assert disclosed.candidate.explanation.contributing_regions == {}

        events = ledger.events_for_resource(request.resource_ref)
        assert len(events) == 1
        assert events[0].action == "access.decision"
        assert events[0].event_id == decision.audit_event_id
        assert events[0].timestamp <= decision.timestamp

    def test_guardian_only_keeps_vector_withheld(self, gate, consent):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=True, guardian_approved=True))
        decision = gate.evaluate(_request(RequesterRole.CITIZEN))
        assert decision.decision == Decision.ALLOW_REDACTED
        assert decision.reason == ReasonCategory.GUARDIAN_CONSENT_ONLY
        disclosed = gate.redact(_candidate(), decision)
        assert disclosed.vector_withheld
        assert not disclosed.faces_blurred

    def test_police_approval_lifts_redaction(self, gate, consent):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=True,
                                             police_approval_ref="PD-9"))
        decision = gate.evaluate(_request(RequesterRole.CITIZEN))
        assert decision.decision == Decision.ALLOW

    @pytest.mark.parametrize("role", [RequesterRole.CITIZEN, RequesterRole.NGO, RequesterRole.POLICE])
    def test_deep_search_on_minor_denied_for_non_legal(self, gate, consent, role):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=True))
        decision = gate.evaluate(_request(role, deep=True, court_order="CO-1"))
        assert decision.decision == Decision.DENY
        assert decision.reason == ReasonCategory.MINOR_PROTECTION
        assert gate.redact(_candidate(), decision) is None

    def test_legal_deep_search_on_minor_needs_court_order(self, gate, consent):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=True))
        denied = gate.evaluate(_request(RequesterRole.LEGAL, deep=True))
        assert denied.reason == ReasonCategory.COURT_ORDER_REQUIRED
        allowed = gate.evaluate(_request(RequesterRole.LEGAL, deep=True, court_order="CO-7"))
        assert allowed.decision == Decision.ALLOW

    def test_unknown_case_treated_as_minor(self, gate):
        decision = gate.evaluate(_request(RequesterRole.CITIZEN, case_id="unknown"))
        assert decision.decision == Decision.ALLOW_REDACTED

    def test_case_directory_used_without_consent_record(self, gate, cases):
        cases.register_case(CaseProfile(case_id="adult-1", created_at=utcnow(), subject_is_minor=False))
        decision = gate.evaluate(_request(RequesterRole.CITIZEN, case_id="adult-1"))
        assert decision.decision == Decision.ALLOW


class TestDeepSearch:

    def test_deep_search_without_court_order_denied(self, gate, consent):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=False))
        decision = gate.evaluate(_request(RequesterRole.POLICE, deep=True))
        assert decision.decision == Decision.DENY
        assert decision.reason == ReasonCategory.COURT_ORDER_REQUIRED
        assert decision.reason_message

    def test_deep_search_with_court_order_allowed(self, gate, consent):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=False))
        decision = gate.evaluate(_request(RequesterRole.LEGAL, deep=True, court_order="CO-1"))
        assert decision.decision == Decision.ALLOW

    def test_invalid_court_order(self, ledger, consent, cases):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=False))
        gate = PrivacyAccessGate(ledger, consent, cases, legal_validator=lambda case_id, ref: ref == "CO-valid")
        assert gate.evaluate(_request(RequesterRole.LEGAL, deep=True, court_order="CO-valid")).decision == Decision.ALLOW
        decision = gate.evaluate(_request(RequesterRole.LEGAL, deep=True, court_order="CO-forged"))
        assert decision.decision == Decision.DENY
        assert decision.reason == ReasonCategory.COURT_ORDER_INVALID

    def test_validator_timeout_is_not_success(self, ledger, consent, cases):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=False))

        def slow_validator(case_id, ref):
            time.sleep(1.0)
            return True

        gate = PrivacyAccessGate(ledger, consent, cases, legal_validator=slow_validator, legal_deadline_sec=0.05)
        request = _request(RequesterRole.LEGAL, deep=True, court_order="CO-1")
        with pytest.raises(ExternalTimeout):
            gate.evaluate(request)
        actions = [e.action for e in ledger.events_for_resource(request.resource_ref)]
        assert actions == ["access.validation_timeout"]


class TestGateBehaviour:

    def test_non_minor_standard_access_allowed(self, gate, consent):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=False))
        request = _request(RequesterRole.CITIZEN)
        decision = gate.evaluate(request)
        assert decision.decision == Decision.ALLOW
        assert request.state == GateState.ALLOWED
        assert gate.redact(_candidate(), decision).vector_withheld

    def test_every_role_has_rules(self):
        assert set(ROLE_RULES) == set(RequesterRole)

    def test_role_parsing(self):
        assert parse_role("Police") == RequesterRole.POLICE
        with pytest.raises(ValidationError):
            parse_role("journalist")

    def test_integrity_fault_halts_disclosures(self, gate, ledger, consent):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=False))
        ledger.latch_integrity_fault("test fault")
        with pytest.raises(IntegrityFault):
            gate.evaluate(_request(RequesterRole.CITIZEN))
        ledger.clear_integrity_fault("operator-1")
        assert gate.evaluate(_request(RequesterRole.CITIZEN)).decision == Decision.ALLOW

    def test_decision_is_logged_before_return(self, gate, ledger, consent):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=False))
        with patch.object(ledger, "append", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                gate.evaluate(_request(RequesterRole.CITIZEN))

    def test_missing_requester(self, gate):
        with pytest.raises(ValidationError):
            gate.evaluate(_request(RequesterRole.CITIZEN, requester=""))

    def test_decision_summary(self, gate, consent):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=True))
        start = utcnow()
        gate.evaluate(_request(RequesterRole.CITIZEN))
        gate.evaluate(_request(RequesterRole.NGO, deep=True))
        summary = gate.decision_summary(start, utcnow())
        assert summary["total_decisions"] == 2
        assert summary["by_decision"] == {"allow_redacted": 1, "deny": 1}

    @patch('reunite.core.privacy.audit_event')
    def test_denials_emit_audit_log(self, mock_audit_event, gate, consent):
        consent.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=False))
        gate.evaluate(_request(RequesterRole.CITIZEN, deep=True))
        assert mock_audit_event.call_args[1]["event_type"] == "access_denied"
