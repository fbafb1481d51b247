"""
Consent registry and approval workflow tests.
"""

import threading
import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from reunite.core import consent as consent_module
from reunite.core.consent import ConsentRegistry
from reunite.core.errors import ValidationError
from reunite.core.schema import ConsentRecord, utcnow


@pytest.fixture
def registry(ledger, db_path):
    return ConsentRegistry(ledger, db_path)


@pytest.fixture
def minor_case(registry):
    return registry.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=True))


class TestConsentRecords:

    def test_record_and_get(self, registry, ledger):
        registry.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=True, guardian_approved=True))
        stored = registry.get_consent("case-1")
        assert stored.subject_is_minor
        assert stored.guardian_approved
        assert not stored.has_legal_clearance
        assert ledger.events_for_resource("case:case-1")[0].action == "consent.recorded"

    def test_missing_record(self, registry):
        assert registry.get_consent("nope") is None

    def test_empty_case_id_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.record_consent(ConsentRecord(case_id=" ", subject_is_minor=False))


class TestApprovalWorkflow:

    def test_guardian_approval_updates_consent(self, registry, minor_case):
        request = registry.request_approval("case-1", "guardian_approval", requester="guardian-portal")
        assert request.status == "pending"
        assert registry.list_pending() == [request]

        assert registry.approve(request.id, approver="caseworker-2", reason="ID verified")
        assert request.status == "approved"
        assert registry.get_consent("case-1").guardian_approved
        assert registry.list_pending() == []

    def test_police_approval_sets_reference(self, registry, minor_case):
        request = registry.request_approval("case-1", "police_approval", "officer-1", reference="PD-2231")
        registry.approve(request.id, "sergeant-4")
        consent = registry.get_consent("case-1")
        assert consent.police_approval_ref == "PD-2231"
        assert consent.has_legal_clearance

    def test_reference_required_for_legal_kinds(self, registry, minor_case):
        with pytest.raises(ValidationError):
            registry.request_approval("case-1", "court_order", "clerk")

    def test_invalid_kind(self, registry, minor_case):
        with pytest.raises(ValidationError):
            registry.request_approval("case-1", "self_service", "someone")

    def test_unknown_case(self, registry):
        with pytest.raises(ValidationError):
            registry.request_approval("ghost", "guardian_approval", "someone")

    def test_requester_cannot_self_approve(self, registry, minor_case):
        request = registry.request_approval("case-1", "guardian_approval", "guardian-portal")
        with pytest.raises(ValidationError):
            registry.approve(request.id, "guardian-portal")

    def test_reject_leaves_consent_unchanged(self, registry, minor_case, ledger):
        request = registry.request_approval("case-1", "court_order", "clerk", reference="CO-1")
        assert registry.reject(request.id, "judge", "insufficient grounds")
        assert request.status == "rejected"
        assert registry.get_consent("case-1").court_order_ref is None
        assert not registry.approve(request.id, "judge")
        actions = [e.action for e in ledger.events_for_resource("case:case-1")]
        assert "consent.approval_denied" in actions

    def test_expiry(self, registry, minor_case):
        request = registry.request_approval("case-1", "guardian_approval", "guardian-portal")
        request.expires_at = utcnow() - timedelta(seconds=1)
        assert registry.expire_requests() == 1
        assert request.status == "expired"
        assert not registry.approve(request.id, "caseworker")

    def test_expired_on_read(self, registry, minor_case):
        with patch.object(consent_module.config, "CONSENT_APPROVAL_TIMEOUT_SEC", -1):
            request = registry.request_approval("case-1", "guardian_approval", "guardian-portal")
        assert registry.get_request(request.id).status == "expired"

    def test_concurrent_approvals_apply_once(self, registry, minor_case, ledger):
        request = registry.request_approval("case-1", "court_order", "clerk", reference="CO-7")
        read_consent = registry.get_consent

        def slow_read(case_id):
            time.sleep(0.05)
            return read_consent(case_id)

        start = threading.Barrier(2)
        outcomes = []

        def approve(approver):
            start.wait()
            outcomes.append(registry.approve(request.id, approver))

        with patch.object(registry, "get_consent", side_effect=slow_read):
            threads = [threading.Thread(target=approve, args=(f"judge-{i}",)) for i in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert sorted(outcomes) == [False, True]
        granted = [e for e in ledger.events_for_resource("case:case-1") if e.action == "consent.approval_granted"]
        assert len(granted) == 1
