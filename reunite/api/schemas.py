"""
Request and response models for the HTTP surface.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class GeoPointModel(BaseModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lon: float = Field(ge=-180.0, le=180.0)


class CaseRegisterRequest(BaseModel):
    case_id: str
    created_at: Optional[datetime] = None
    subject_is_minor: bool = False
    last_seen_location: Optional[GeoPointModel] = None
    last_seen_at: Optional[datetime] = None
    demographic_bucket: Optional[str] = None

    @field_validator('case_id')
    @classmethod
    def case_id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('case_id cannot be empty')
        return v


class EmbeddingSubmitRequest(BaseModel):
    subject_case_id: str
    vector: List[float]
    model_version: str

    @field_validator('subject_case_id', 'model_version')
    @classmethod
    def must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('value cannot be empty')
        return v


class EmbeddingSubmitResponse(BaseModel):
    id: str


class MatchQueryRequest(BaseModel):
    query_id: str
    vector: List[float]
    k: int = Field(default=10, ge=1, le=100)
    source: str = "case"
    source_name: Optional[str] = None
    location: Optional[GeoPointModel] = None
    observed_at: Optional[datetime] = None
    demographic_bucket: Optional[str] = None
    search_radius_m: Optional[float] = Field(default=None, gt=0)
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    @field_validator('source')
    @classmethod
    def source_must_be_valid(cls, v):
        valid_sources = ['case', 'tip', 'osint']
        if v not in valid_sources:
            raise ValueError(f'source must be one of: {valid_sources}')
        return v


class DecisionModel(BaseModel):
    requester_id: str
    requester_role: str
    resource_ref: str
    decision: str
    reason: str
    reason_message: str
    timestamp: datetime
    audit_event_id: Optional[int] = None


class MatchModel(BaseModel):
    query_id: str
    candidate_case_id: str
    similarity_score: float
    composite_confidence: float
    secondary_signals: Dict[str, float]
    contributing_regions: Dict[str, float]
    contributing_signals: Dict[str, float]
    faces_blurred: bool
    vector_withheld: bool
    decision: DecisionModel


class MatchQueryResponse(BaseModel):
    matches: List[MatchModel]
    degraded: bool


class DuplicateCheckRequest(BaseModel):
    draft_id: str
    vector: List[float]
    demographic_bucket: Optional[str] = None
    last_seen_location: Optional[GeoPointModel] = None
    last_seen_at: Optional[datetime] = None


class DuplicateCheckResponse(BaseModel):
    status: str
    candidate_case_ids: List[str]
    similarities: Dict[str, float]


class ConsentRequest(BaseModel):
    case_id: str
    subject_is_minor: bool
    guardian_approved: bool = False
    police_approval_ref: Optional[str] = None
    court_order_ref: Optional[str] = None


class ConsentApprovalCreateRequest(BaseModel):
    kind: str
    reference: Optional[str] = None

    @field_validator('kind')
    @classmethod
    def kind_must_be_valid(cls, v):
        valid_kinds = ['guardian_approval', 'police_approval', 'court_order']
        if v not in valid_kinds:
            raise ValueError(f'kind must be one of: {valid_kinds}')
        return v


class ConsentApprovalDecisionRequest(BaseModel):
    reason: str = ""


class ConsentApprovalResponse(BaseModel):
    id: str
    case_id: str
    kind: str
    status: str
    requester: str
    created_at: datetime
    expires_at: datetime
    approver: Optional[str] = None
    approval_reason: Optional[str] = None


class DeepSearchRequest(BaseModel):
    court_order_ref: Optional[str] = None


class PublishRequest(BaseModel):
    last_seen_location: GeoPointModel
    radius_m: Optional[float] = Field(default=None, gt=0)
    mode: str = "standard"

    @field_validator('mode')
    @classmethod
    def mode_must_be_valid(cls, v):
        valid_modes = ['standard', 'disaster_broadcast']
        if v not in valid_modes:
            raise ValueError(f'mode must be one of: {valid_modes}')
        return v


class AlertZoneResponse(BaseModel):
    zone_id: str
    case_id: str
    center: GeoPointModel
    radius_meters: float
    mode: str
    status: str
    recipient_count: int
    unresolved_recipients: List[str]
    region_id: Optional[str] = None
    dispatched_at: Optional[datetime] = None


class RegionDeclareRequest(BaseModel):
    region_id: str
    name: str
    min_lat: float = Field(ge=-90.0, le=90.0)
    min_lon: float = Field(ge=-180.0, le=180.0)
    max_lat: float = Field(ge=-90.0, le=90.0)
    max_lon: float = Field(ge=-180.0, le=180.0)


class SubscriberRequest(BaseModel):
    subscriber_id: str
    location: GeoPointModel
    channel: str = "push"
    low_bandwidth: bool = False


class AuditEventModel(BaseModel):
    event_id: int
    actor: str
    action: str
    resource_ref: str
    timestamp: datetime
    prior_event_hash: str
    event_hash: str
    payload: Dict


class AuditExportResponse(BaseModel):
    events: List[AuditEventModel]


class ChainVerificationResponse(BaseModel):
    valid: bool
    checked: int
    broken_at: Optional[int] = None


class IntegrityClearRequest(BaseModel):
    note: str = ""


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    index_available: bool
    index_size: int
    embeddings: int
    integrity_fault: Optional[str] = None
