"""
HTTP surface of the discovery engine.

Requester identity arrives in the X-Requester-Id and X-Requester-Role headers
from the authenticating gateway in front of this service.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from util.logging import logger as structured_logger

from ..core.config import VERSION, debug_enabled
from ..core.engine import DiscoveryEngine, get_engine
from ..core.errors import (
    AccessDenied, ExternalTimeout, IndexUnavailable, IntegrityFault, TransportFailure, ValidationError,
)
from ..core.privacy import parse_role
from ..core.schema import (
    AccessDecision, AlertMode, AlertZone, CaseProfile, ConsentRecord, GeoPoint, NewCaseDraft,
    QueryContext, ReasonCategory, RequesterRole, SignalSource, utcnow,
)
from ..dispatch.geo import Subscriber
from .schemas import (
    AlertZoneResponse, AuditEventModel, AuditExportResponse, CaseRegisterRequest, ChainVerificationResponse,
    ConsentApprovalCreateRequest, ConsentApprovalDecisionRequest, ConsentApprovalResponse, ConsentRequest,
    DecisionModel, DeepSearchRequest, DuplicateCheckRequest, DuplicateCheckResponse, EmbeddingSubmitRequest,
    EmbeddingSubmitResponse, GeoPointModel, HealthResponse, IntegrityClearRequest, MatchModel,
    MatchQueryRequest, MatchQueryResponse, PublishRequest, RegionDeclareRequest, SubscriberRequest,
)

logger = logging.getLogger(__name__)

OPERATOR_ROLES = {RequesterRole.POLICE, RequesterRole.LEGAL}

app = FastAPI(
    title="Reunite Discovery Engine API",
    version=VERSION,
    description="Identity resolution, privacy gating and geo-alerting for missing-person cases",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)


# ------------------------------------------------------------------ errors

def _reason_body(reason: ReasonCategory) -> dict:
    return {"reason": reason.value, "message": reason.message}


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    structured_logger.log_validation_error(f"{request.method} {request.url.path}", [exc])
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(AccessDenied)
async def access_denied_handler(request: Request, exc: AccessDenied):
    return JSONResponse(status_code=403, content=_reason_body(exc.reason))


@app.exception_handler(IntegrityFault)
async def integrity_fault_handler(request: Request, exc: IntegrityFault):
    return JSONResponse(status_code=503, content=_reason_body(ReasonCategory.INTEGRITY_HOLD))


@app.exception_handler(IndexUnavailable)
async def index_unavailable_handler(request: Request, exc: IndexUnavailable):
    return JSONResponse(status_code=503, content={"detail": "Similarity search is temporarily unavailable"})


@app.exception_handler(ExternalTimeout)
async def external_timeout_handler(request: Request, exc: ExternalTimeout):
    return JSONResponse(status_code=504, content={"detail": "An upstream service did not respond in time"})


@app.exception_handler(TransportFailure)
async def transport_failure_handler(request: Request, exc: TransportFailure):
    return JSONResponse(status_code=502, content={"detail": "Alert transport unavailable"})


# ------------------------------------------------------------ dependencies

def engine_dep() -> DiscoveryEngine:
    return get_engine()


def requester(x_requester_id: str = Header(...), x_requester_role: str = Header(...)):
    """(requester_id, role) from gateway headers."""
    if not x_requester_id.strip():
        raise ValidationError("X-Requester-Id cannot be empty")
    return x_requester_id, parse_role(x_requester_role)


def operator(request: Request, who=Depends(requester), engine: DiscoveryEngine = Depends(engine_dep)):
    """Requester id for audit-administration routes; police and legal roles only."""
    requester_id, role = who
    if role not in OPERATOR_ROLES:
        resource_ref = f"route:{request.url.path}"
        engine.ledger.append(requester_id, "audit.operator_denied", resource_ref, {"role": role.value})
        structured_logger.log_gate_decision(requester_id, role.value, resource_ref, "deny",
                                            ReasonCategory.OPERATOR_ROLE_REQUIRED.value)
        raise AccessDenied(ReasonCategory.OPERATOR_ROLE_REQUIRED, resource_ref)
    return requester_id


def _geo(model: Optional[GeoPointModel]) -> Optional[GeoPoint]:
    return GeoPoint(model.lat, model.lon) if model is not None else None


def _decision_model(decision: AccessDecision) -> DecisionModel:
    return DecisionModel(**decision.to_dict())


def _zone_response(zone: AlertZone) -> AlertZoneResponse:
    return AlertZoneResponse(
        zone_id=zone.zone_id,
        case_id=zone.case_id,
        center=GeoPointModel(lat=zone.center.lat, lon=zone.center.lon),
        radius_meters=zone.radius_meters,
        mode=zone.mode.value,
        status=zone.status.value,
        recipient_count=zone.recipient_count,
        unresolved_recipients=zone.unresolved_recipients,
        region_id=zone.region_id,
        dispatched_at=zone.dispatched_at,
    )


# ------------------------------------------------------------------ routes

@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(engine: DiscoveryEngine = Depends(engine_dep)):
    health = engine.health()
    healthy = health["database"] and not health["integrity_fault"]
    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        version=VERSION,
        db_health=health["database"],
        index_available=health["index_available"],
        index_size=health["index_size"],
        embeddings=health["embeddings"],
        integrity_fault=health["integrity_fault"],
    )


@app.post("/cases")
def register_case(req: CaseRegisterRequest, engine: DiscoveryEngine = Depends(engine_dep)):
    profile = engine.register_case(CaseProfile(
        case_id=req.case_id,
        created_at=req.created_at or utcnow(),
        subject_is_minor=req.subject_is_minor,
        last_seen_location=_geo(req.last_seen_location),
        last_seen_at=req.last_seen_at,
        demographic_bucket=req.demographic_bucket,
    ))
    return {"success": True, "case_id": profile.case_id}


@app.post("/embeddings", response_model=EmbeddingSubmitResponse)
def submit_embedding(req: EmbeddingSubmitRequest, engine: DiscoveryEngine = Depends(engine_dep)):
    record_id = engine.submit_embedding(req.subject_case_id, req.vector, req.model_version)
    return EmbeddingSubmitResponse(id=record_id)


@app.post("/matches", response_model=MatchQueryResponse)
def find_matches(req: MatchQueryRequest, who=Depends(requester), engine: DiscoveryEngine = Depends(engine_dep)):
    requester_id, role = who
    context = QueryContext(
        query_id=req.query_id,
        source=SignalSource(req.source),
        location=_geo(req.location),
        observed_at=req.observed_at,
        demographic_bucket=req.demographic_bucket,
        source_name=req.source_name,
        since=req.since,
        until=req.until,
        search_radius_m=req.search_radius_m,
    )
    result = engine.find_matches(req.vector, context, req.k, requester_id, role)
    return MatchQueryResponse(
        degraded=result.degraded,
        matches=[
            MatchModel(
                query_id=m.candidate.query_id,
                candidate_case_id=m.candidate.candidate_case_id,
                similarity_score=m.candidate.similarity_score,
                composite_confidence=m.candidate.composite_confidence,
                secondary_signals=m.candidate.secondary_signals,
                contributing_regions=m.candidate.explanation.contributing_regions,
                contributing_signals=m.candidate.explanation.contributing_signals,
                faces_blurred=m.faces_blurred,
                vector_withheld=m.vector_withheld,
                decision=_decision_model(m.decision),
            )
            for m in result.matches
        ],
    )


@app.post("/duplicates/check", response_model=DuplicateCheckResponse)
def check_duplicate(req: DuplicateCheckRequest, engine: DiscoveryEngine = Depends(engine_dep)):
    result = engine.check_duplicate(NewCaseDraft(
        draft_id=req.draft_id,
        vector=req.vector,
        demographic_bucket=req.demographic_bucket,
        last_seen_location=_geo(req.last_seen_location),
        last_seen_at=req.last_seen_at,
    ))
    return DuplicateCheckResponse(
        status=result.status.value,
        candidate_case_ids=result.candidate_case_ids,
        similarities=result.similarities,
    )


@app.put("/consent")
def record_consent(req: ConsentRequest, who=Depends(requester), engine: DiscoveryEngine = Depends(engine_dep)):
    requester_id, _ = who
    engine.record_consent(ConsentRecord(
        case_id=req.case_id,
        subject_is_minor=req.subject_is_minor,
        guardian_approved=req.guardian_approved,
        police_approval_ref=req.police_approval_ref,
        court_order_ref=req.court_order_ref,
    ), actor=requester_id)
    return {"success": True, "case_id": req.case_id}


@app.post("/cases/{case_id}/consent/approvals", response_model=ConsentApprovalResponse)
def request_consent_approval(case_id: str, req: ConsentApprovalCreateRequest, who=Depends(requester),
                             engine: DiscoveryEngine = Depends(engine_dep)):
    requester_id, _ = who
    approval = engine.consent.request_approval(case_id, req.kind, requester_id, req.reference)
    return ConsentApprovalResponse(**approval.to_dict())


@app.post("/consent/approvals/{request_id}/approve", response_model=ConsentApprovalResponse)
def approve_consent(request_id: str, req: ConsentApprovalDecisionRequest, who=Depends(requester),
                    engine: DiscoveryEngine = Depends(engine_dep)):
    requester_id, _ = who
    if not engine.consent.approve(request_id, requester_id, req.reason):
        raise ValidationError(f"Approval request {request_id} is not pending")
    return ConsentApprovalResponse(**engine.consent.get_request(request_id).to_dict())


@app.post("/consent/approvals/{request_id}/reject", response_model=ConsentApprovalResponse)
def reject_consent(request_id: str, req: ConsentApprovalDecisionRequest, who=Depends(requester),
                   engine: DiscoveryEngine = Depends(engine_dep)):
    requester_id, _ = who
    if not engine.consent.reject(request_id, requester_id, req.reason):
        raise ValidationError(f"Approval request {request_id} is not pending")
    return ConsentApprovalResponse(**engine.consent.get_request(request_id).to_dict())


@app.post("/cases/{case_id}/deep-search", response_model=DecisionModel)
def request_deep_search(case_id: str, req: DeepSearchRequest, who=Depends(requester),
                        engine: DiscoveryEngine = Depends(engine_dep)):
    requester_id, role = who
    decision = engine.request_deep_search(case_id, req.court_order_ref, requester_id, role)
    return _decision_model(decision)


@app.post("/embeddings/{record_id}/disclose")
def disclose_embedding(record_id: str, req: DeepSearchRequest, who=Depends(requester),
                       engine: DiscoveryEngine = Depends(engine_dep)):
    requester_id, role = who
    decision, vector = engine.disclose_embedding(record_id, requester_id, role, req.court_order_ref)
    return {"decision": _decision_model(decision).model_dump(mode="json"), "vector": vector.tolist()}


@app.post("/cases/{case_id}/publish", response_model=AlertZoneResponse)
def publish_case(case_id: str, req: PublishRequest, engine: DiscoveryEngine = Depends(engine_dep)):
    zone = engine.on_case_published(case_id, _geo(req.last_seen_location), req.radius_m, AlertMode(req.mode))
    return _zone_response(zone)


@app.get("/alerts/{zone_id}", response_model=AlertZoneResponse)
def get_alert_zone(zone_id: str, engine: DiscoveryEngine = Depends(engine_dep)):
    zone = engine.dispatcher.get_zone(zone_id)
    if zone is None:
        return JSONResponse(status_code=404, content={"detail": f"Alert zone '{zone_id}' not found"})
    return _zone_response(zone)


@app.post("/regions")
def declare_region(req: RegionDeclareRequest, engine: DiscoveryEngine = Depends(engine_dep)):
    region = engine.dispatcher.declare_region(req.region_id, req.name,
                                              (req.min_lat, req.min_lon, req.max_lat, req.max_lon))
    return {"success": True, "region_id": region.region_id}


@app.post("/subscribers")
def add_subscriber(req: SubscriberRequest, engine: DiscoveryEngine = Depends(engine_dep)):
    engine.subscribers.add_subscriber(Subscriber(
        subscriber_id=req.subscriber_id,
        location=_geo(req.location),
        channel=req.channel,
        low_bandwidth=req.low_bandwidth,
    ))
    return {"success": True, "subscriber_id": req.subscriber_id}


@app.get("/audit/export", response_model=AuditExportResponse)
def export_audit(from_ts: datetime = Query(...), to_ts: datetime = Query(...),
                 operator_id: str = Depends(operator), engine: DiscoveryEngine = Depends(engine_dep)):
    if from_ts > to_ts:
        raise ValidationError("from_ts must not be after to_ts")
    events = engine.export_audit_range(from_ts, to_ts)
    structured_logger.log_operation("audit_export", "success", {"operator": operator_id, "events": len(events)})
    return AuditExportResponse(events=[AuditEventModel(**e.to_dict()) for e in events])


@app.get("/audit/verify", response_model=ChainVerificationResponse)
def verify_audit(start_id: Optional[int] = None, end_id: Optional[int] = None,
                 engine: DiscoveryEngine = Depends(engine_dep)):
    result = engine.verify_audit_chain(start_id, end_id)
    return ChainVerificationResponse(valid=result.valid, checked=result.checked, broken_at=result.broken_at)


@app.post("/audit/integrity/clear")
def clear_integrity(req: IntegrityClearRequest, operator_id: str = Depends(operator),
                    engine: DiscoveryEngine = Depends(engine_dep)):
    event = engine.clear_integrity_fault(operator_id, req.note)
    return {"success": True, "event_id": event.event_id}
