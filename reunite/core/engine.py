"""
Discovery engine facade.

Wires the embedding store, similarity index, resolver, privacy gate,
dispatcher and audit ledger together and exposes the operations external
collaborators call. Every match leaving find_matches has passed exactly one
gate decision.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import numpy as np

from util.logging import logger as structured_logger

from . import config
from .cases import CaseDirectory
from .consent import ConsentRegistry
from .crypto import IKeyManager, LocalKeyManager
from .db import health_check
from .embedding_store import EmbeddingStore
from .errors import AccessDenied, OperationalAlerts, ValidationError
from .ledger import AuditLedger
from .privacy import LegalOrderValidator, PrivacyAccessGate
from .resolver import MatchResolver
from .schema import (
    AccessDecision, AccessRequest, AlertMode, AlertZone, AuditEvent, CaseProfile, ChainVerification,
    ConsentRecord, Decision, DuplicateCheckResult, EmbeddingRecord, GeoPoint, MatchQueryResult,
    NewCaseDraft, QueryContext, RequesterRole,
)
from ..dispatch.dispatcher import CancellationToken, GeoAlertDispatcher
from ..dispatch.geo import SubscriberIndex
from ..dispatch.transport import IAlertTransport, get_transport
from ..vector.faiss_store import create_index
from ..vector.index import ISimilarityIndex, RecentActivityScanner
from ..vector.segments import load_index, save_index
from ..vector.types import IndexEntry

logger = logging.getLogger(__name__)


class DiscoveryEngine:
    """Entry point for ingest, match, duplicate, consent, publication and audit operations."""

    def __init__(self, db_path: Optional[str] = None, index: Optional[ISimilarityIndex] = None,
                 key_manager: Optional[IKeyManager] = None, transport: Optional[IAlertTransport] = None,
                 legal_validator: Optional[LegalOrderValidator] = None,
                 alerts: Optional[OperationalAlerts] = None, dimension: Optional[int] = None,
                 dispatcher_options: Optional[Dict] = None):
        self.db_path = db_path
        self.dimension = dimension or config.EMBEDDING_DIM
        self.alerts = alerts or OperationalAlerts()
        self.key_manager = key_manager or LocalKeyManager()

        self.ledger = AuditLedger(db_path, alerts=self.alerts)
        self.store = EmbeddingStore(self.ledger, self.key_manager, db_path, self.dimension)
        self.cases = CaseDirectory(db_path)
        self.consent = ConsentRegistry(self.ledger, db_path)
        self.index = index if index is not None else create_index(dimension=self.dimension)
        self.scanner = RecentActivityScanner(self.store, self._entry_for_record)
        self.resolver = MatchResolver(self.index, self.cases, self.ledger, self.scanner, self.dimension)
        self.gate = PrivacyAccessGate(self.ledger, self.consent, self.cases, legal_validator)
        self.subscribers = SubscriberIndex(db_path)
        self.dispatcher = GeoAlertDispatcher(
            self.ledger, self.subscribers, transport or get_transport(), db_path,
            alerts=self.alerts, **(dispatcher_options or {})
        )

    # ------------------------------------------------------------ ingest

    def register_case(self, profile: CaseProfile) -> CaseProfile:
        profile = self.cases.register_case(profile)
        self._refresh_case(profile.case_id)
        return profile

    def update_last_seen(self, case_id: str, location: GeoPoint, seen_at: datetime) -> None:
        self.cases.update_last_seen(case_id, location, seen_at)
        self._refresh_case(case_id)

    def submit_embedding(self, subject_case_id: str, vector, model_version: str) -> str:
        """
        Persist an embedding and index it alongside the case's other photos.

        Records of the case embedded under a different model version are
        superseded and retired from the index.
        """
        record = self.store.submit(subject_case_id, vector, model_version)

        for older_id in self.store.superseded_by(subject_case_id, model_version):
            self.index.retire(older_id)

        profile = self.cases.get_case(subject_case_id)
        for current in self.store.current_records(subject_case_id):
            if current.id == record.id or not self.index.contains(current.id):
                self.index.upsert(self._entry_for_record(current, profile))
        return record.id

    def _refresh_case(self, case_id: str) -> int:
        """Re-index a case's current records so filters see its latest profile."""
        profile = self.cases.get_case(case_id)
        entries = [self._entry_for_record(r, profile) for r in self.store.current_records(case_id)]
        return self.index.batch_upsert(entries)

    def _entry_for_record(self, record: EmbeddingRecord, profile: Optional[CaseProfile] = None) -> IndexEntry:
        if profile is None:
            profile = self.cases.get_case(record.subject_case_id)
        return IndexEntry(
            id=record.id,
            case_id=record.subject_case_id,
            created_at=record.created_at,
            vector=record.vector,
            location=profile.last_seen_location if profile else None,
            observed_at=profile.last_seen_at if profile else None,
            demographic_bucket=profile.demographic_bucket if profile else None,
        )

    def rebuild_index(self) -> int:
        """Rebuild the index from the store: per case, every record under its newest model version."""
        newest: Dict[str, EmbeddingRecord] = {}
        by_version: Dict[Tuple[str, str], List[EmbeddingRecord]] = {}
        for record in self.store.iter_records():
            current = newest.get(record.subject_case_id)
            if current is None or record.created_at >= current.created_at:
                newest[record.subject_case_id] = record
            by_version.setdefault((record.subject_case_id, record.model_version), []).append(record)

        profiles = self.cases.get_cases(newest.keys())
        self.index.clear()
        count = self.index.batch_upsert(
            self._entry_for_record(r, profiles.get(case_id))
            for case_id, latest in newest.items()
            for r in by_version[(case_id, latest.model_version)]
        )
        if hasattr(self.index, "mark_available"):
            self.index.mark_available()
        structured_logger.log_operation("rebuild_index", "success", {"indexed": count})
        return count

    def save_index(self, directory: Optional[str] = None) -> int:
        return save_index(self.index, directory or config.INDEX_SEGMENT_DIR, self.key_manager)

    def load_index(self, directory: Optional[str] = None) -> Optional[int]:
        return load_index(self.index, directory or config.INDEX_SEGMENT_DIR, self.key_manager)

    # ------------------------------------------------------------- match

    def find_matches(self, vector, context: QueryContext, k: int, requester_id: str,
                     requester_role: RequesterRole) -> MatchQueryResult:
        """Resolve candidates and release each one only through the privacy gate."""
        self.ledger.raise_if_halted()
        candidates, degraded = self.resolver.resolve(vector, context, k)

        released = []
        for candidate in candidates:
            request = AccessRequest(
                requester_id=requester_id,
                requester_role=requester_role,
                resource_ref=f"match:{context.query_id}:{candidate.candidate_case_id}",
                case_id=candidate.candidate_case_id,
            )
            decision = self.gate.evaluate(request)
            disclosed = self.gate.redact(candidate, decision)
            if disclosed is not None:
                released.append(disclosed)

        return MatchQueryResult(matches=released, degraded=degraded)

    def check_duplicate(self, draft: NewCaseDraft) -> DuplicateCheckResult:
        return self.resolver.check_duplicate(draft)

    # ----------------------------------------------------- consent/legal

    def record_consent(self, record: ConsentRecord, actor: str = "case_service") -> ConsentRecord:
        return self.consent.record_consent(record, actor)

    def request_deep_search(self, case_id: str, court_order_ref: Optional[str], requester_id: str,
                            requester_role: RequesterRole = RequesterRole.LEGAL) -> AccessDecision:
        request = AccessRequest(
            requester_id=requester_id,
            requester_role=requester_role,
            resource_ref=f"case:{case_id}:deep_search",
            case_id=case_id,
            deep_search=True,
            court_order_ref=court_order_ref,
        )
        return self.gate.evaluate(request)

    def disclose_embedding(self, record_id: str, requester_id: str, requester_role: RequesterRole,
                           court_order_ref: Optional[str]) -> Tuple[AccessDecision, np.ndarray]:
        """
        Authorized disclosure path for a decrypted vector.

        Only an Allowed deep-search decision releases the vector; anything else
        raises AccessDenied after the decision has been logged.
        """
        metadata = self.store.metadata(record_id)
        if metadata is None:
            raise ValidationError(f"Unknown embedding record: {record_id}")

        resource_ref = f"embedding:{record_id}"
        decision = self.gate.evaluate(AccessRequest(
            requester_id=requester_id,
            requester_role=requester_role,
            resource_ref=resource_ref,
            case_id=metadata["subject_case_id"],
            deep_search=True,
            court_order_ref=court_order_ref,
        ))
        if decision.decision != Decision.ALLOW:
            raise AccessDenied(decision.reason, resource_ref)

        record = self.store.read(record_id, requester_id, f"deep_search decision {decision.audit_event_id}")
        return decision, record.vector

    # ------------------------------------------------------------ alerts

    def on_case_published(self, case_id: str, last_seen_location: GeoPoint, radius_m: Optional[float] = None,
                          mode: AlertMode = AlertMode.STANDARD,
                          cancel_token: Optional[CancellationToken] = None) -> AlertZone:
        if self.cases.get_case(case_id) is not None:
            self.cases.mark_published(case_id)
        return self.dispatcher.dispatch(case_id, last_seen_location, radius_m or config.ALERT_DEFAULT_RADIUS_M,
                                        mode, cancel_token)

    # ------------------------------------------------------------- audit

    def export_audit_range(self, from_ts: datetime, to_ts: datetime) -> List[AuditEvent]:
        return self.ledger.export_range(from_ts, to_ts)

    def verify_audit_chain(self, start_id: Optional[int] = None, end_id: Optional[int] = None) -> ChainVerification:
        return self.ledger.verify_chain(start_id, end_id)

    def clear_integrity_fault(self, operator: str, note: str = "") -> AuditEvent:
        return self.ledger.clear_integrity_fault(operator, note)

    def health(self) -> Dict:
        return {
            "database": health_check(self.db_path),
            "index_available": self.index.available,
            "index_size": self.index.size(),
            "embeddings": self.store.count(),
            "subscribers": self.subscribers.count(),
            "ledger_head": self.ledger.head()[0],
            "integrity_fault": self.ledger.integrity_fault,
            "version": config.VERSION,
        }


_engine: Optional[DiscoveryEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> DiscoveryEngine:
    """Process-wide engine, created on first use."""
    global _engine
    with _engine_lock:
        if _engine is None:
            config.ensure_db_directory()
            _engine = DiscoveryEngine()
        return _engine


def reset_engine(engine: Optional[DiscoveryEngine] = None):
    """Replace the process-wide engine (tests and scripts)."""
    global _engine
    with _engine_lock:
        _engine = engine
