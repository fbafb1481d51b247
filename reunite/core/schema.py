"""
Data model for identity resolution, privacy gating, alert dispatch and auditing.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float

    def __post_init__(self):
        if not -90.0 <= self.lat <= 90.0:
            raise ValueError(f"Latitude out of range: {self.lat}")
        if not -180.0 <= self.lon <= 180.0:
            raise ValueError(f"Longitude out of range: {self.lon}")


@dataclass(frozen=True)
class EmbeddingRecord:
    """Immutable biometric vector; superseded by a new record, never mutated."""
    id: str
    subject_case_id: str
    vector: np.ndarray
    model_version: str
    created_at: datetime
    encryption_key_ref: str


@dataclass
class CaseProfile:
    """Case attributes supplied by the case collaborator for ranking and dedup."""
    case_id: str
    created_at: datetime
    subject_is_minor: bool = False
    last_seen_location: Optional[GeoPoint] = None
    last_seen_at: Optional[datetime] = None
    demographic_bucket: Optional[str] = None  # e.g. "F:10-14"
    published: bool = False


class SignalSource(str, Enum):
    """Where a match query originated."""
    CASE = "case"
    TIP = "tip"
    OSINT = "osint"


@dataclass
class QueryContext:
    """Secondary signals accompanying a match query."""
    query_id: str
    source: SignalSource = SignalSource.CASE
    location: Optional[GeoPoint] = None
    observed_at: Optional[datetime] = None
    demographic_bucket: Optional[str] = None
    source_name: Optional[str] = None  # OSINT feed identifier
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    search_radius_m: Optional[float] = None


@dataclass
class MatchExplanation:
    contributing_regions: Dict[str, float] = field(default_factory=dict)
    contributing_signals: Dict[str, float] = field(default_factory=dict)


@dataclass
class MatchCandidate:
    query_id: str
    candidate_case_id: str
    similarity_score: float
    secondary_signals: Dict[str, float]
    composite_confidence: float
    explanation: MatchExplanation
    record_id: Optional[str] = None
    case_created_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        if self.case_created_at:
            data['case_created_at'] = self.case_created_at.isoformat()
        return data


@dataclass
class ConsentRecord:
    case_id: str
    subject_is_minor: bool
    guardian_approved: bool = False
    police_approval_ref: Optional[str] = None
    court_order_ref: Optional[str] = None

    @property
    def has_legal_clearance(self) -> bool:
        """Police approval or a court order, the only refs that lift minor redaction."""
        return bool(self.police_approval_ref or self.court_order_ref)


class RequesterRole(str, Enum):
    """Closed set of requester roles; each has explicit rules in the gate."""
    CITIZEN = "citizen"
    POLICE = "police"
    NGO = "ngo"
    LEGAL = "legal"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ALLOW_REDACTED = "allow_redacted"


class ReasonCategory(str, Enum):
    """Human-readable reason categories returned with every decision."""
    PERMITTED = "permitted"
    MINOR_PROTECTION = "minor_protection"
    GUARDIAN_CONSENT_ONLY = "guardian_consent_only"
    COURT_ORDER_REQUIRED = "court_order_required"
    COURT_ORDER_INVALID = "court_order_invalid"
    INTEGRITY_HOLD = "integrity_hold"
    OPERATOR_ROLE_REQUIRED = "operator_role_required"

    @property
    def message(self) -> str:
        return REASON_MESSAGES[self]


REASON_MESSAGES = {
    ReasonCategory.PERMITTED: "Access permitted.",
    ReasonCategory.MINOR_PROTECTION: "This case concerns a minor; identifying details are protected.",
    ReasonCategory.GUARDIAN_CONSENT_ONLY: "Guardian consent is on file; biometric detail stays protected until police or court approval.",
    ReasonCategory.COURT_ORDER_REQUIRED: "A court order is required for this kind of search.",
    ReasonCategory.COURT_ORDER_INVALID: "The court order reference could not be validated.",
    ReasonCategory.INTEGRITY_HOLD: "Disclosures are paused while an integrity check is resolved.",
    ReasonCategory.OPERATOR_ROLE_REQUIRED: "This action is restricted to police and legal operators.",
}


class GateState(str, Enum):
    RECEIVED = "received"
    POLICY_EVALUATED = "policy_evaluated"
    ALLOWED = "allowed"
    ALLOWED_REDACTED = "allowed_redacted"
    DENIED = "denied"


@dataclass
class AccessRequest:
    requester_id: str
    requester_role: RequesterRole
    resource_ref: str
    case_id: str
    deep_search: bool = False
    court_order_ref: Optional[str] = None
    state: GateState = GateState.RECEIVED


@dataclass(frozen=True)
class AccessDecision:
    requester_id: str
    requester_role: RequesterRole
    resource_ref: str
    decision: Decision
    reason: ReasonCategory
    timestamp: datetime
    audit_event_id: Optional[int] = None

    @property
    def reason_message(self) -> str:
        return self.reason.message

    def to_dict(self) -> Dict:
        return {
            "requester_id": self.requester_id,
            "requester_role": self.requester_role.value,
            "resource_ref": self.resource_ref,
            "decision": self.decision.value,
            "reason": self.reason.value,
            "reason_message": self.reason_message,
            "timestamp": self.timestamp.isoformat(),
            "audit_event_id": self.audit_event_id,
        }


@dataclass
class DisclosedMatch:
    """A match candidate as released to a caller after gating."""
    candidate: MatchCandidate
    decision: AccessDecision
    faces_blurred: bool = False
    vector_withheld: bool = True
    vector: Optional[List[float]] = None


@dataclass
class MatchQueryResult:
    matches: List[DisclosedMatch]
    degraded: bool = False


class AlertMode(str, Enum):
    STANDARD = "standard"
    DISASTER_BROADCAST = "disaster_broadcast"


class AlertStatus(str, Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    PARTIALLY_DISPATCHED = "partially_dispatched"
    CANCELLED = "cancelled"


@dataclass
class AlertZone:
    zone_id: str
    case_id: str
    center: GeoPoint
    radius_meters: float
    mode: AlertMode
    recipient_count: int = 0
    dispatched_at: Optional[datetime] = None
    status: AlertStatus = AlertStatus.PENDING
    unresolved_recipients: List[str] = field(default_factory=list)
    region_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != AlertStatus.PENDING


@dataclass(frozen=True)
class AuditEvent:
    event_id: int
    actor: str
    action: str
    resource_ref: str
    timestamp: datetime
    prior_event_hash: str
    event_hash: str
    payload: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "event_id": self.event_id,
            "actor": self.actor,
            "action": self.action,
            "resource_ref": self.resource_ref,
            "timestamp": self.timestamp.isoformat(),
            "prior_event_hash": self.prior_event_hash,
            "event_hash": self.event_hash,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class ChainVerification:
    valid: bool
    checked: int
    broken_at: Optional[int] = None

    @classmethod
    def ok(cls, checked: int) -> 'ChainVerification':
        return cls(valid=True, checked=checked)

    @classmethod
    def broken(cls, event_id: int, checked: int) -> 'ChainVerification':
        return cls(valid=False, checked=checked, broken_at=event_id)


@dataclass
class NewCaseDraft:
    draft_id: str
    vector: np.ndarray
    demographic_bucket: Optional[str] = None
    last_seen_location: Optional[GeoPoint] = None
    last_seen_at: Optional[datetime] = None


class DuplicateStatus(str, Enum):
    CLEAR = "clear"
    DUPLICATE_SUSPECTED = "duplicate_suspected"


@dataclass
class DuplicateCheckResult:
    status: DuplicateStatus
    candidate_case_ids: List[str] = field(default_factory=list)
    similarities: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def clear(cls) -> 'DuplicateCheckResult':
        return cls(status=DuplicateStatus.CLEAR)


Bounds = Tuple[float, float, float, float]  # min_lat, min_lon, max_lat, max_lon
