"""
End-to-end engine flows: ingest, gated matching, disclosure, publication and health.
"""

import numpy as np
import pytest

from reunite.core.errors import AccessDenied, IntegrityFault, ValidationError
from reunite.core.schema import (
    AlertStatus, CaseProfile, ConsentRecord, Decision, DuplicateStatus, GeoPoint, NewCaseDraft, QueryContext,
    ReasonCategory, RequesterRole, utcnow,
)
from reunite.dispatch.geo import Subscriber

from conftest import near, random_vector

LOCATION = GeoPoint(40.7128, -74.0060)


def register(engine, case_id, minor=False, **kwargs):
    engine.register_case(CaseProfile(case_id=case_id, created_at=utcnow(), subject_is_minor=minor,
                                     last_seen_location=LOCATION, **kwargs))
    engine.record_consent(ConsentRecord(case_id=case_id, subject_is_minor=minor))


class TestIngest:

    def test_new_embedding_supersedes_older_in_index(self, engine, rng):
        register(engine, "case-1")
        first = engine.submit_embedding("case-1", random_vector(rng), "facenet-v1")
        second = engine.submit_embedding("case-1", random_vector(rng), "facenet-v2")

        assert first != second
        assert engine.index.size() == 1
        assert sorted(engine.store.records_for_case("case-1")) == sorted([first, second])

    def test_rebuild_keeps_current_model_version_per_case(self, engine, rng):
        register(engine, "case-1")
        register(engine, "case-2")
        engine.submit_embedding("case-1", random_vector(rng), "v1")
        photo_a, photo_b = random_vector(rng), random_vector(rng)
        engine.submit_embedding("case-1", photo_a, "v2")
        engine.submit_embedding("case-1", photo_b, "v2")
        engine.submit_embedding("case-2", random_vector(rng), "v1")

        engine.index.clear()
        assert engine.rebuild_index() == 3
        for photo in (photo_a, photo_b):
            hits = engine.index.query(photo, 1)
            assert hits[0].case_id == "case-1"
            assert hits[0].score == pytest.approx(1.0, abs=1e-5)

    def test_second_photo_under_same_model_keeps_first_searchable(self, engine, rng):
        register(engine, "case-1")
        photo_a, photo_b = random_vector(rng), random_vector(rng)
        engine.submit_embedding("case-1", photo_a, "facenet-v1")
        engine.submit_embedding("case-1", photo_b, "facenet-v1")

        assert engine.index.size() == 2
        for photo in (photo_a, photo_b):
            hit = engine.index.query(photo, 1)[0]
            assert hit.case_id == "case-1"
            assert hit.score >= 0.99

    def test_model_upgrade_retires_every_photo_of_older_model(self, engine, rng):
        register(engine, "case-1")
        engine.submit_embedding("case-1", random_vector(rng), "facenet-v1")
        engine.submit_embedding("case-1", random_vector(rng), "facenet-v1")
        upgraded = engine.submit_embedding("case-1", random_vector(rng), "facenet-v2")

        assert engine.index.size() == 1
        assert engine.index.contains(upgraded)

    def test_profile_registered_after_embedding_reaches_filters(self, engine, rng):
        vector = random_vector(rng)
        engine.submit_embedding("case-2", vector, "v1")
        register(engine, "case-2")

        context = QueryContext(query_id="q-geo", location=LOCATION, search_radius_m=5000)
        result = engine.find_matches(vector, context, 5, "officer-1", RequesterRole.POLICE)
        assert [m.candidate.candidate_case_id for m in result.matches] == ["case-2"]

    def test_last_seen_update_moves_case_in_filters(self, engine, rng):
        register(engine, "case-3")
        vector = random_vector(rng)
        engine.submit_embedding("case-3", vector, "v1")
        elsewhere = GeoPoint(34.0522, -118.2437)
        engine.update_last_seen("case-3", elsewhere, utcnow())

        old_area = QueryContext(query_id="q-old", location=LOCATION, search_radius_m=5000)
        new_area = QueryContext(query_id="q-new", location=elsewhere, search_radius_m=5000)
        assert engine.find_matches(vector, old_area, 5, "officer-1", RequesterRole.POLICE).matches == []
        assert len(engine.find_matches(vector, new_area, 5, "officer-1", RequesterRole.POLICE).matches) == 1
        assert engine.index.size() == 1

    def test_wrong_dimension_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.submit_embedding("case-1", np.ones(3), "v1")


class TestGatedMatching:

    def test_citizen_query_on_minor_is_redacted_and_audited(self, engine, rng):
        register(engine, "case-1", minor=True)
        vector = random_vector(rng)
        engine.submit_embedding("case-1", vector, "v1")

        result = engine.find_matches(near(vector, 0.95, rng), QueryContext(query_id="q1"), 5,
                                     "citizen-7", RequesterRole.CITIZEN)
        assert not result.degraded
        assert len(result.matches) == 1
        match = result.matches[0]
        assert match.decision.decision == Decision.ALLOW_REDACTED
        assert match.vector_withheld
        assert match.vector is None
        assert match.faces_blurred
        assert match.candidate.explanation.contributing_regions == {}

        events = engine.ledger.events_for_resource("match:q1:case-1")
        assert [e.action for e in events] == ["access.decision"]
        assert events[0].actor == "citizen-7"

    def test_police_query_on_adult_keeps_explanation(self, engine, rng):
        register(engine, "case-2")
        vector = random_vector(rng)
        engine.submit_embedding("case-2", vector, "v1")

        result = engine.find_matches(vector, QueryContext(query_id="q2"), 5, "officer-1", RequesterRole.POLICE)
        match = result.matches[0]
        assert match.decision.decision == Decision.ALLOW
        assert match.candidate.explanation.contributing_regions
        assert match.vector_withheld

    def test_one_decision_per_released_match(self, engine, rng):
        vector = random_vector(rng)
        for i in range(3):
            register(engine, f"case-{i}")
            engine.submit_embedding(f"case-{i}", near(vector, 0.9 + i * 0.02, rng), "v1")

        result = engine.find_matches(vector, QueryContext(query_id="q3"), 10, "ngo-1", RequesterRole.NGO)
        assert len(result.matches) == 3
        decision_ids = {m.decision.audit_event_id for m in result.matches}
        assert len(decision_ids) == 3

    def test_integrity_fault_halts_matching(self, engine, rng):
        register(engine, "case-1")
        vector = random_vector(rng)
        engine.submit_embedding("case-1", vector, "v1")
        engine.ledger.latch_integrity_fault("decrypt failure")

        with pytest.raises(IntegrityFault):
            engine.find_matches(vector, QueryContext(query_id="q4"), 5, "u1", RequesterRole.CITIZEN)

        engine.clear_integrity_fault("operator-1", "investigated")
        assert len(engine.find_matches(vector, QueryContext(query_id="q5"), 5, "u1",
                                       RequesterRole.CITIZEN).matches) == 1

    def test_duplicate_check_through_engine(self, engine, rng):
        register(engine, "case-1", demographic_bucket="M:30-39")
        vector = random_vector(rng)
        engine.submit_embedding("case-1", vector, "v1")

        result = engine.check_duplicate(NewCaseDraft(
            draft_id="d1", vector=near(vector, 0.98, rng), demographic_bucket="M:30-39",
            last_seen_location=GeoPoint(40.72, -74.01),
        ))
        assert result.status == DuplicateStatus.DUPLICATE_SUSPECTED
        assert result.candidate_case_ids == ["case-1"]


class TestDisclosure:

    def test_unknown_record(self, engine):
        with pytest.raises(ValidationError):
            engine.disclose_embedding("missing", "u1", RequesterRole.LEGAL, "CO-1")

    def test_citizen_cannot_disclose(self, engine, rng):
        register(engine, "case-1")
        record_id = engine.submit_embedding("case-1", random_vector(rng), "v1")
        with pytest.raises(AccessDenied) as exc_info:
            engine.disclose_embedding(record_id, "citizen-1", RequesterRole.CITIZEN, None)
        assert exc_info.value.reason == ReasonCategory.COURT_ORDER_REQUIRED

        actions = [e.action for e in engine.ledger.events_for_resource(f"embedding:{record_id}")]
        assert actions == ["access.decision"]

    def test_legal_disclosure_reads_through_store(self, engine, rng):
        register(engine, "case-1")
        vector = random_vector(rng)
        record_id = engine.submit_embedding("case-1", vector, "v1")

        decision, disclosed = engine.disclose_embedding(record_id, "clerk-1", RequesterRole.LEGAL, "CO-2026-17")
        assert decision.decision == Decision.ALLOW
        np.testing.assert_allclose(disclosed, vector, atol=1e-6)

        actions = [e.action for e in engine.ledger.events_for_resource(f"embedding:{record_id}")]
        assert actions == ["access.decision", "embedding.read"]

    def test_deep_search_request(self, engine):
        register(engine, "case-1", minor=True)
        denied = engine.request_deep_search("case-1", None, "clerk-1")
        assert denied.reason == ReasonCategory.COURT_ORDER_REQUIRED
        allowed = engine.request_deep_search("case-1", "CO-1", "clerk-1")
        assert allowed.decision == Decision.ALLOW


class TestPublication:

    def test_publish_dispatches_alerts(self, engine, transport):
        register(engine, "case-1")
        engine.subscribers.add_subscriber(Subscriber("s1", GeoPoint(40.713, -74.006)))
        engine.subscribers.add_subscriber(Subscriber("s2", GeoPoint(41.5, -74.006)))

        zone = engine.on_case_published("case-1", LOCATION, radius_m=3000)
        assert zone.status == AlertStatus.DISPATCHED
        assert zone.recipient_count == 1
        assert [i.subscriber_id for i in transport.delivered] == ["s1"]
        assert engine.cases.get_case("case-1").published

    def test_default_radius(self, engine):
        zone = engine.on_case_published("case-9", LOCATION)
        assert zone.radius_meters == 5000


class TestAuditAndHealth:

    def test_export_and_verify(self, engine, rng):
        start = utcnow()
        register(engine, "case-1")
        engine.submit_embedding("case-1", random_vector(rng), "v1")
        events = engine.export_audit_range(start, utcnow())
        assert [e.action for e in events] == ["consent.recorded"]

        verification = engine.verify_audit_chain()
        assert verification.valid
        assert verification.checked == engine.ledger.count()

    def test_health(self, engine, rng):
        register(engine, "case-1")
        engine.submit_embedding("case-1", random_vector(rng), "v1")
        health = engine.health()
        assert health["database"]
        assert health["index_available"]
        assert health["index_size"] == 1
        assert health["embeddings"] == 1
        assert health["integrity_fault"] is None
