"""
Similarity index value types.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

import numpy as np

from ..core.schema import GeoPoint


@dataclass(frozen=True)
class IndexEntry:
    """An embedding as held by the index: normalized vector plus filterable attributes."""

    id: str
    """Embedding record id"""

    case_id: str
    """Case the embedding belongs to"""

    created_at: datetime
    """Creation time of the embedding record, used for tie-breaking"""

    vector: Optional[np.ndarray] = None
    """Unit-length float32 vector"""

    location: Optional[GeoPoint] = None
    """Case last-seen location"""

    observed_at: Optional[datetime] = None
    """Case last-seen time"""

    demographic_bucket: Optional[str] = None

    def without_vector(self) -> 'IndexEntry':
        return IndexEntry(
            id=self.id,
            case_id=self.case_id,
            created_at=self.created_at,
            location=self.location,
            observed_at=self.observed_at,
            demographic_bucket=self.demographic_bucket,
        )


@dataclass
class QueryResult:
    """A raw similarity hit."""

    id: str
    """Embedding record id"""

    case_id: str

    score: float
    """Exact cosine similarity, clipped to [0, 1]"""

    created_at: datetime

    metadata: Dict[str, object] = field(default_factory=dict)


@dataclass
class SearchFilters:
    """Post-filters applied to the candidate set after retrieval."""

    center: Optional[GeoPoint] = None
    radius_m: Optional[float] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    demographic_bucket: Optional[str] = None

    def is_empty(self) -> bool:
        return (self.center is None and self.since is None and self.until is None
                and self.demographic_bucket is None)

    def accepts(self, entry: IndexEntry) -> bool:
        # Imported here to keep vector.types free of dispatch at import time
        from ..dispatch.geo import haversine_m

        if self.demographic_bucket is not None and entry.demographic_bucket != self.demographic_bucket:
            return False

        if self.center is not None and self.radius_m is not None:
            if entry.location is None:
                return False
            if haversine_m(self.center, entry.location) > self.radius_m:
                return False

        if self.since is not None or self.until is not None:
            seen = _aware(entry.observed_at or entry.created_at)
            if self.since is not None and seen < _aware(self.since):
                return False
            if self.until is not None and seen > _aware(self.until):
                return False

        return True


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def normalize(vector) -> np.ndarray:
    """Return a unit-length float32 copy of a vector (zero vectors are returned as-is)."""
    array = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(array))
    if norm == 0.0:
        return array.copy()
    return (array / norm).astype(np.float32)
