"""
Match Resolver.

Turns raw similarity hits into ranked, explainable match candidates:
composite confidence over similarity, geo-temporal proximity and source
reliability; a similarity floor; one candidate per case; and region-level
attribution of the score. New-case deduplication runs the same pipeline with a
high floor plus demographic/location corroboration.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from util.logging import logger as structured_logger

from . import config
from .cases import CaseDirectory
from .embedding_store import validate_vector
from .errors import IndexUnavailable
from .ledger import AuditLedger
from .schema import (
    CaseProfile, DuplicateCheckResult, DuplicateStatus, GeoPoint, MatchCandidate, MatchExplanation,
    NewCaseDraft, QueryContext, SignalSource,
)
from ..dispatch.geo import haversine_m
from ..vector.index import ISimilarityIndex, RecentActivityScanner
from ..vector.types import QueryResult, SearchFilters

logger = logging.getLogger(__name__)

DUPLICATE_CANDIDATES = 10


def geo_temporal_proximity(query_location: Optional[GeoPoint], query_time: Optional[datetime],
                           seen_location: Optional[GeoPoint], seen_time: Optional[datetime]) -> Optional[float]:
    """
    Proximity in [0, 1] between the query's context and a case's last-seen context.

    Distance and elapsed time decay exponentially; a factor is skipped when
    either side lacks it. Returns None when nothing is comparable.
    """
    factors = []
    if query_location is not None and seen_location is not None:
        distance_km = haversine_m(query_location, seen_location) / 1000.0
        factors.append(math.exp(-distance_km / config.GEO_SCALE_KM))
    if query_time is not None and seen_time is not None:
        hours = abs((_aware(query_time) - _aware(seen_time)).total_seconds()) / 3600.0
        factors.append(math.exp(-hours / config.TIME_SCALE_HOURS))
    if not factors:
        return None
    product = 1.0
    for f in factors:
        product *= f
    return product


def composite_confidence(signals: Dict[str, float], weights: Dict[str, float]) -> Tuple[float, Dict[str, float]]:
    """Weighted average over the available signals; returns (confidence, per-signal contribution)."""
    active = {name: value for name, value in signals.items() if weights.get(name, 0.0) > 0.0}
    total_weight = sum(weights[name] for name in active)
    if total_weight <= 0.0:
        return 0.0, {}
    contributions = {name: weights[name] * value / total_weight for name, value in active.items()}
    confidence = min(1.0, max(0.0, sum(contributions.values())))
    return confidence, {name: round(c, 4) for name, c in contributions.items()}


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


class MatchResolver:
    """Ranks index hits into MatchCandidates."""

    def __init__(self, index: ISimilarityIndex, cases: CaseDirectory, ledger: Optional[AuditLedger] = None,
                 scanner: Optional[RecentActivityScanner] = None, dimension: Optional[int] = None,
                 similarity_floor: Optional[float] = None):
        self.index = index
        self.cases = cases
        self.ledger = ledger
        self.scanner = scanner
        self.dimension = dimension or config.EMBEDDING_DIM
        self.similarity_floor = similarity_floor if similarity_floor is not None else config.MATCH_SIMILARITY_FLOOR

    def _search(self, vector, k: int, filters: Optional[SearchFilters]) -> Tuple[List[QueryResult], bool]:
        """Index query, falling back to the recent-activity scan; returns (hits, degraded)."""
        try:
            return self.index.query(vector, k, filters), False
        except IndexUnavailable as e:
            if self.scanner is None:
                raise
            logger.warning(f"Similarity index unavailable, using recent-activity scan: {e}")
            results, complete = self.scanner.scan(vector, k, filters)
            structured_logger.log_index_operation("fallback_scan", "-", {
                "results": len(results), "complete": complete
            }, status="degraded")
            return results, True

    def resolve(self, query_embedding, context: QueryContext, k: int = 10) -> Tuple[List[MatchCandidate], bool]:
        """
        Rank candidate cases for a query embedding.

        Returns the candidates (non-increasing composite confidence, one per
        case, at most k) and whether the result came from the degraded scan.
        """
        vector = validate_vector(query_embedding, self.dimension)
        filters = SearchFilters(
            center=context.location if context.search_radius_m else None,
            radius_m=context.search_radius_m,
            since=context.since,
            until=context.until,
            demographic_bucket=context.demographic_bucket,
        )

        # Several records may belong to one case; over-fetch before collapsing
        hits, degraded = self._search(vector, k * 3, filters)
        profiles = self.cases.get_cases(hit.case_id for hit in hits)
        weights = config.get_resolver_weights()
        regions = config.get_embedding_regions(self.dimension)

        best: Dict[str, MatchCandidate] = {}
        suppressed = 0
        for hit in hits:
            if hit.score < self.similarity_floor:
                suppressed += 1
                continue

            profile = profiles.get(hit.case_id)
            signals = self._signals(hit, profile, context)
            confidence, contributions = composite_confidence(signals, weights)

            current = best.get(hit.case_id)
            if current is not None and current.composite_confidence >= confidence:
                continue

            best[hit.case_id] = MatchCandidate(
                query_id=context.query_id,
                candidate_case_id=hit.case_id,
                similarity_score=round(hit.score, 6),
                secondary_signals={name: round(v, 6) for name, v in signals.items() if name != "similarity"},
                composite_confidence=round(confidence, 6),
                explanation=MatchExplanation(
                    contributing_regions=self.index.attribution(vector, hit.id, regions),
                    contributing_signals=contributions,
                ),
                record_id=hit.id,
                case_created_at=profile.created_at if profile else hit.created_at,
            )

        # Older cases first on equal confidence
        ranked = sorted(best.values(),
                        key=lambda c: (-c.composite_confidence, _aware(c.case_created_at).timestamp()))[:k]

        structured_logger.log_operation("resolve", "success", {
            "query_id": context.query_id,
            "hits": len(hits),
            "suppressed": suppressed,
            "returned": len(ranked),
            "degraded": degraded,
        })
        return ranked, degraded

    def _signals(self, hit: QueryResult, profile: Optional[CaseProfile], context: QueryContext) -> Dict[str, float]:
        signals = {"similarity": hit.score}

        if profile is not None:
            seen_location, seen_time = profile.last_seen_location, profile.last_seen_at
        else:
            seen_location, seen_time = hit.metadata.get("location"), hit.metadata.get("observed_at")
        proximity = geo_temporal_proximity(context.location, context.observed_at, seen_location, seen_time)
        if proximity is not None:
            signals["geo_temporal"] = proximity

        if context.source in (SignalSource.TIP, SignalSource.OSINT):
            reliability = config.get_source_reliability()
            key = context.source_name if context.source_name in reliability else context.source.value
            signals["source_reliability"] = min(1.0, max(0.0, reliability.get(key, 0.0)))

        return signals

    def check_duplicate(self, draft: NewCaseDraft, actor: str = "case_service") -> DuplicateCheckResult:
        """Flag a draft that looks like an existing case; never rejects it."""
        vector = validate_vector(draft.vector, self.dimension)
        hits, degraded = self._search(vector, DUPLICATE_CANDIDATES, None)
        floor = config.DUPLICATE_SIMILARITY_FLOOR
        profiles = self.cases.get_cases(hit.case_id for hit in hits if hit.score >= floor)

        candidates: List[str] = []
        similarities: Dict[str, float] = {}
        for hit in hits:
            if hit.score < floor or hit.case_id in similarities:
                continue
            if not self._corroborated(draft, profiles.get(hit.case_id), hit):
                continue
            candidates.append(hit.case_id)
            similarities[hit.case_id] = round(hit.score, 6)

        if candidates:
            result = DuplicateCheckResult(DuplicateStatus.DUPLICATE_SUSPECTED, candidates, similarities)
        else:
            result = DuplicateCheckResult.clear()

        if self.ledger is not None:
            self.ledger.append(actor, "duplicate.checked", f"draft:{draft.draft_id}", {
                "status": result.status.value,
                "candidate_case_ids": candidates,
                "degraded": degraded,
            })
        return result

    def _corroborated(self, draft: NewCaseDraft, profile: Optional[CaseProfile], hit: QueryResult) -> bool:
        """Every attribute known on both sides must agree, and at least one must be comparable."""
        if profile is not None:
            bucket, location = profile.demographic_bucket, profile.last_seen_location
        else:
            bucket, location = hit.metadata.get("demographic_bucket"), hit.metadata.get("location")

        checks = []
        if draft.demographic_bucket and bucket:
            checks.append(draft.demographic_bucket == bucket)
        if draft.last_seen_location is not None and location is not None:
            checks.append(haversine_m(draft.last_seen_location, location) <= config.DUPLICATE_MAX_DISTANCE_M)
        return bool(checks) and all(checks)
