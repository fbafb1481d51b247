"""
Privacy Access Gate.

Every read path (match disclosure, deep search, embedding disclosure) passes
through PrivacyAccessGate.evaluate. Rules are evaluated in order per requester
role and the first match wins. A decision is appended to the audit ledger
before it is returned, so nothing reaches a caller without an audit event.
"""

import dataclasses
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from util.logging import audit_event, logger as structured_logger

from . import config
from .cases import CaseDirectory
from .consent import ConsentRegistry
from .deadline import call_with_deadline
from .errors import ExternalTimeout, ValidationError
from .ledger import AuditLedger
from .schema import (
    AccessDecision, AccessRequest, ConsentRecord, Decision, DisclosedMatch, GateState,
    MatchCandidate, ReasonCategory, RequesterRole, utcnow,
)

logger = logging.getLogger(__name__)

# Validates a court order reference for a case with the legal collaborator
LegalOrderValidator = Callable[[str, str], bool]

Outcome = Tuple[Decision, ReasonCategory]


@dataclasses.dataclass(frozen=True)
class PolicyInput:
    """Everything a rule may look at."""
    request: AccessRequest
    consent: ConsentRecord


def minor_protection_rule(policy: PolicyInput) -> Optional[Outcome]:
    """Minor subject without police or court clearance."""
    consent = policy.consent
    request = policy.request
    if not consent.subject_is_minor or consent.has_legal_clearance:
        return None
    if request.deep_search:
        if request.requester_role == RequesterRole.LEGAL:
            # Legal authorities fall through to the court order rule
            return None
        return Decision.DENY, ReasonCategory.MINOR_PROTECTION
    if consent.guardian_approved:
        return Decision.ALLOW_REDACTED, ReasonCategory.GUARDIAN_CONSENT_ONLY
    return Decision.ALLOW_REDACTED, ReasonCategory.MINOR_PROTECTION


def court_order_rule(policy: PolicyInput) -> Optional[Outcome]:
    """Deep search needs an active court order reference."""
    if policy.request.deep_search and not policy.request.court_order_ref:
        return Decision.DENY, ReasonCategory.COURT_ORDER_REQUIRED
    return None


def default_allow_rule(policy: PolicyInput) -> Optional[Outcome]:
    return Decision.ALLOW, ReasonCategory.PERMITTED


_STANDARD_RULES = (minor_protection_rule, court_order_rule, default_allow_rule)

# One entry per role; a role without an entry is rejected rather than defaulted
ROLE_RULES: Dict[RequesterRole, Tuple[Callable[[PolicyInput], Optional[Outcome]], ...]] = {
    RequesterRole.CITIZEN: _STANDARD_RULES,
    RequesterRole.POLICE: _STANDARD_RULES,
    RequesterRole.NGO: _STANDARD_RULES,
    RequesterRole.LEGAL: _STANDARD_RULES,
}


def parse_role(role) -> RequesterRole:
    if isinstance(role, RequesterRole):
        return role
    try:
        return RequesterRole(str(role).lower())
    except ValueError:
        raise ValidationError(f"Unknown requester role: {role}")


class PrivacyAccessGate:
    """Evaluates access requests and logs every decision before releasing it."""

    def __init__(self, ledger: AuditLedger, consent: ConsentRegistry, cases: Optional[CaseDirectory] = None,
                 legal_validator: Optional[LegalOrderValidator] = None,
                 legal_deadline_sec: Optional[float] = None):
        self.ledger = ledger
        self.consent = consent
        self.cases = cases
        self.legal_validator = legal_validator
        self.legal_deadline_sec = legal_deadline_sec or config.LEGAL_ORDER_DEADLINE_SEC

    def evaluate(self, request: AccessRequest) -> AccessDecision:
        """
        Run the request through the rule list and return a logged decision.

        Raises:
            IntegrityFault: while the ledger's integrity latch is set
            ValidationError: malformed request or unknown role
            ExternalTimeout: the legal-order validator missed its deadline
        """
        self.ledger.raise_if_halted()
        self._validate(request)
        request.requester_role = parse_role(request.requester_role)
        request.state = GateState.RECEIVED

        rules = ROLE_RULES.get(request.requester_role)
        if rules is None:
            raise ValidationError(f"No policy defined for role {request.requester_role.value}")

        policy = PolicyInput(request=request, consent=self._consent_for(request.case_id))
        outcome = None
        for rule in rules:
            outcome = rule(policy)
            if outcome is not None:
                break
        request.state = GateState.POLICY_EVALUATED

        decision, reason = outcome
        if decision == Decision.ALLOW and request.deep_search:
            decision, reason = self._validate_court_order(request)

        return self._commit(request, decision, reason)

    def _validate(self, request: AccessRequest):
        if not request.requester_id:
            raise ValidationError("requester_id is required")
        if not request.resource_ref:
            raise ValidationError("resource_ref is required")
        if not request.case_id:
            raise ValidationError("case_id is required")

    def _consent_for(self, case_id: str) -> ConsentRecord:
        """Consent on file, or the most protective reading of what is known about the case."""
        record = self.consent.get_consent(case_id)
        if record is not None:
            return record
        profile = self.cases.get_case(case_id) if self.cases else None
        is_minor = profile.subject_is_minor if profile else True
        return ConsentRecord(case_id=case_id, subject_is_minor=is_minor)

    def _validate_court_order(self, request: AccessRequest) -> Outcome:
        if self.legal_validator is None:
            return Decision.ALLOW, ReasonCategory.PERMITTED
        try:
            valid = call_with_deadline(self.legal_validator, self.legal_deadline_sec,
                                       request.case_id, request.court_order_ref)
        except ExternalTimeout:
            self.ledger.append(request.requester_id, "access.validation_timeout", request.resource_ref,
                               {"case_id": request.case_id})
            raise
        if not valid:
            return Decision.DENY, ReasonCategory.COURT_ORDER_INVALID
        return Decision.ALLOW, ReasonCategory.PERMITTED

    def _commit(self, request: AccessRequest, decision: Decision, reason: ReasonCategory) -> AccessDecision:
        # Log-then-release: the append must be acknowledged before the caller sees the decision
        event = self.ledger.append(request.requester_id, "access.decision", request.resource_ref, {
            "requester_role": request.requester_role.value,
            "case_id": request.case_id,
            "deep_search": request.deep_search,
            "decision": decision.value,
            "reason": reason.value,
        })

        request.state = {
            Decision.ALLOW: GateState.ALLOWED,
            Decision.ALLOW_REDACTED: GateState.ALLOWED_REDACTED,
            Decision.DENY: GateState.DENIED,
        }[decision]

        structured_logger.log_gate_decision(request.requester_id, request.requester_role.value,
                                            request.resource_ref, decision.value, reason.value)
        if decision == Decision.DENY:
            audit_event(
                event_type="access_denied",
                identifiers={"requester_id": request.requester_id, "resource_ref": request.resource_ref},
                payload={"reason": reason.value, "deep_search": request.deep_search}
            )

        return AccessDecision(
            requester_id=request.requester_id,
            requester_role=request.requester_role,
            resource_ref=request.resource_ref,
            decision=decision,
            reason=reason,
            timestamp=event.timestamp,
            audit_event_id=event.event_id,
        )

    def redact(self, candidate: MatchCandidate, decision: AccessDecision) -> Optional[DisclosedMatch]:
        """Shape a candidate for release under a decision; denied candidates are not released."""
        if decision.decision == Decision.DENY:
            return None

        released = dataclasses.replace(candidate)
        faces_blurred = decision.reason == ReasonCategory.MINOR_PROTECTION
        if decision.decision == Decision.ALLOW_REDACTED:
            # Confirms the match exists without the detail that drove it
            released.explanation = dataclasses.replace(candidate.explanation, contributing_regions={})
        return DisclosedMatch(
            candidate=released,
            decision=decision,
            faces_blurred=faces_blurred,
            vector_withheld=True,
        )

    def decision_summary(self, from_ts: datetime, to_ts: datetime) -> Dict[str, Any]:
        """Counts of gate decisions by outcome and reason over a time range."""
        by_decision: Dict[str, int] = {}
        by_reason: Dict[str, int] = {}
        total = 0
        for event in self.ledger.export_range(from_ts, to_ts):
            if event.action != "access.decision":
                continue
            total += 1
            decision = event.payload.get("decision", "unknown")
            reason = event.payload.get("reason", "unknown")
            by_decision[decision] = by_decision.get(decision, 0) + 1
            by_reason[reason] = by_reason.get(reason, 0) + 1

        return {
            "timestamp": utcnow().isoformat(),
            "version": config.VERSION,
            "total_decisions": total,
            "by_decision": by_decision,
            "by_reason": by_reason,
            "integrity_fault": self.ledger.integrity_fault,
        }
