"""
Consent registry and approval workflow.

Consent records carry the guardian approval and legal references the privacy
gate reads. Changes to them go through an explicit approval request so every
grant has a requester, an approver and an audit trail.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from . import config
from .db import get_db, init_db
from .errors import ValidationError
from .ledger import AuditLedger
from .schema import ConsentRecord, utcnow

logger = logging.getLogger(__name__)

APPROVAL_KINDS = ("guardian_approval", "police_approval", "court_order")


@dataclass
class ConsentApprovalRequest:
    id: str
    case_id: str
    kind: str  # guardian_approval, police_approval, court_order
    reference: Optional[str]
    requester: str
    status: str  # pending, approved, rejected, expired
    created_at: datetime
    expires_at: datetime
    approver: Optional[str] = None
    approval_reason: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        data['expires_at'] = self.expires_at.isoformat()
        return data


class ConsentRegistry:
    """Stores consent records and runs the approval workflow that changes them."""

    def __init__(self, ledger: AuditLedger, db_path: Optional[str] = None):
        self.ledger = ledger
        self.db_path = db_path
        self._requests: Dict[str, ConsentApprovalRequest] = {}
        self._lock = threading.Lock()
        init_db(db_path)

    # ----------------------------------------------------------- records

    def record_consent(self, record: ConsentRecord, actor: str = "case_service") -> ConsentRecord:
        """Insert or replace the consent record for a case."""
        if not record.case_id or not record.case_id.strip():
            raise ValidationError("case_id cannot be empty")

        self._write(record)
        self.ledger.append(actor, "consent.recorded", f"case:{record.case_id}", {
            "subject_is_minor": record.subject_is_minor,
            "guardian_approved": record.guardian_approved,
            "has_police_approval": bool(record.police_approval_ref),
            "has_court_order": bool(record.court_order_ref),
        })
        return record

    def get_consent(self, case_id: str) -> Optional[ConsentRecord]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT case_id, subject_is_minor, guardian_approved, police_approval_ref, court_order_ref "
                "FROM consent WHERE case_id = ?", (case_id,)
            ).fetchone()
        if not row:
            return None
        return ConsentRecord(
            case_id=row[0],
            subject_is_minor=bool(row[1]),
            guardian_approved=bool(row[2]),
            police_approval_ref=row[3],
            court_order_ref=row[4],
        )

    def _write(self, record: ConsentRecord):
        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO consent (case_id, subject_is_minor, guardian_approved, "
                "police_approval_ref, court_order_ref, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
                (record.case_id, record.subject_is_minor, record.guardian_approved,
                 record.police_approval_ref, record.court_order_ref, utcnow().isoformat())
            )
            conn.commit()

    # ---------------------------------------------------------- workflow

    def request_approval(self, case_id: str, kind: str, requester: str,
                         reference: Optional[str] = None) -> ConsentApprovalRequest:
        """Open an approval request that will update the case's consent when approved."""
        if kind not in APPROVAL_KINDS:
            raise ValidationError(f"Invalid approval kind: {kind}")
        if kind != "guardian_approval" and not reference:
            raise ValidationError(f"{kind} requires a reference")
        if self.get_consent(case_id) is None:
            raise ValidationError(f"No consent record for case {case_id}")

        created_at = utcnow()
        request = ConsentApprovalRequest(
            id=str(uuid.uuid4()),
            case_id=case_id,
            kind=kind,
            reference=reference,
            requester=requester,
            status='pending',
            created_at=created_at,
            expires_at=created_at + timedelta(seconds=config.CONSENT_APPROVAL_TIMEOUT_SEC),
        )
        with self._lock:
            self._requests[request.id] = request

        logger.info(f"Created consent approval request {request.id} by {requester} for {kind}")
        self.ledger.append(requester, "consent.approval_requested", f"case:{case_id}",
                           {"request_id": request.id, "kind": kind})
        return request

    def get_request(self, request_id: str) -> Optional[ConsentApprovalRequest]:
        with self._lock:
            return self._current_locked(request_id)

    def _current_locked(self, request_id: str) -> Optional[ConsentApprovalRequest]:
        request = self._requests.get(request_id)
        if request and request.status == 'pending' and utcnow() > request.expires_at:
            self._expire(request)
        return request

    def approve(self, request_id: str, approver: str, reason: str = "") -> bool:
        """Approve a pending request and apply it to the consent record."""
        with self._lock:
            request = self._current_locked(request_id)
            if not request or request.status != 'pending':
                return False
            if config.CONSENT_APPROVAL_ENABLED and approver == request.requester:
                raise ValidationError("Requester cannot approve their own request")

            consent = self.get_consent(request.case_id)
            if request.kind == "guardian_approval":
                consent.guardian_approved = True
            elif request.kind == "police_approval":
                consent.police_approval_ref = request.reference
            else:
                consent.court_order_ref = request.reference
            self._write(consent)

            request.status = 'approved'
            request.approver = approver
            request.approval_reason = reason
            self.ledger.append(approver, "consent.approval_granted", f"case:{request.case_id}",
                               {"request_id": request_id, "kind": request.kind, "reason": reason})

        logger.info(f"Approved consent request {request_id} by {approver}: {reason}")
        return True

    def reject(self, request_id: str, approver: str, reason: str = "") -> bool:
        with self._lock:
            request = self._current_locked(request_id)
            if not request or request.status != 'pending':
                return False

            request.status = 'rejected'
            request.approver = approver
            request.approval_reason = reason
            self.ledger.append(approver, "consent.approval_denied", f"case:{request.case_id}",
                               {"request_id": request_id, "kind": request.kind, "reason": reason})

        logger.info(f"Rejected consent request {request_id} by {approver}: {reason}")
        return True

    def list_pending(self) -> List[ConsentApprovalRequest]:
        with self._lock:
            requests = list(self._requests.values())
        return [r for r in requests if r.status == 'pending']

    def expire_requests(self) -> int:
        """Expire pending requests past their deadline; returns how many expired."""
        now = utcnow()
        with self._lock:
            expired = [r for r in self._requests.values() if r.status == 'pending' and now > r.expires_at]
            for request in expired:
                self._expire(request)
        return len(expired)

    def _expire(self, request: ConsentApprovalRequest):
        request.status = 'expired'
        self.ledger.append("approval_system", "consent.approval_expired", f"case:{request.case_id}",
                           {"request_id": request.id, "kind": request.kind})
