"""
Similarity index over the Embedding Store.

Entries are written to an in-memory tail segment; a full tail is sealed into
an immutable segment (with an ANN structure in subclasses). Readers work on
an atomically published snapshot, so a query never blocks on an upsert and
only sees entries whose write has fully completed.
"""

import heapq
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

import numpy as np

from util.logging import logger as structured_logger

from ..core import config
from ..core.errors import IndexUnavailable, InvalidVectorDimension, ValidationError
from ..core.schema import EmbeddingRecord
from .types import IndexEntry, QueryResult, SearchFilters, normalize

logger = logging.getLogger(__name__)

Location = Tuple[int, int]  # (segment number, row)


class ISimilarityIndex(ABC):
    """Abstract interface for similarity index operations."""

    @abstractmethod
    def upsert(self, entry: IndexEntry) -> None:
        """Insert an entry, replacing any entry with the same id."""
        pass

    @abstractmethod
    def batch_upsert(self, entries: Iterable[IndexEntry]) -> int:
        """Insert many entries; returns the number inserted."""
        pass

    @abstractmethod
    def retire(self, record_id: str) -> bool:
        """Hide a superseded entry from future queries."""
        pass

    @abstractmethod
    def contains(self, record_id: str) -> bool:
        """Whether a live (not retired) entry with this id is held."""
        pass

    @abstractmethod
    def query(self, vector, k: int, filters: Optional[SearchFilters] = None) -> List[QueryResult]:
        """Top-k by similarity descending, ties broken by most recent created_at."""
        pass

    @abstractmethod
    def attribution(self, vector, record_id: str, regions: Dict[str, Tuple[int, int]]) -> Dict[str, float]:
        """Share of the similarity contributed by each region of the vector."""
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    @abstractmethod
    def size(self) -> int:
        pass

    @property
    @abstractmethod
    def available(self) -> bool:
        pass


@dataclass(frozen=True)
class _Segment:
    vectors: np.ndarray
    entries: Tuple[IndexEntry, ...]
    ann: object = None


class _Tail:
    """Growable write buffer; rows below `count` are fully written and immutable."""

    def __init__(self, dimension: int, capacity: int):
        self.vectors = np.zeros((capacity, dimension), dtype=np.float32)
        self.entries: List[Optional[IndexEntry]] = [None] * capacity
        self.count = 0

    @property
    def capacity(self) -> int:
        return self.vectors.shape[0]

    def grown(self, capacity: int) -> '_Tail':
        tail = _Tail(self.vectors.shape[1], capacity)
        tail.vectors[:self.count] = self.vectors[:self.count]
        tail.entries[:self.count] = self.entries[:self.count]
        tail.count = self.count
        return tail


@dataclass(frozen=True)
class _Snapshot:
    sealed: Tuple[_Segment, ...]
    tail: _Tail
    tombstones: FrozenSet[Location]

    def total(self) -> int:
        return sum(len(seg.entries) for seg in self.sealed) + self.tail.count


class SegmentedIndex(ISimilarityIndex):
    """Exact (brute force) segmented index; subclasses add an ANN structure per sealed segment."""

    INITIAL_TAIL_CAPACITY = 1024

    def __init__(self, dimension: Optional[int] = None, segment_size: Optional[int] = None,
                 oversample: Optional[int] = None, compact_ratio: Optional[float] = None):
        self.dimension = dimension or config.EMBEDDING_DIM
        self.segment_size = segment_size or config.INDEX_SEGMENT_SIZE
        self.oversample = max(1, oversample or config.INDEX_OVERSAMPLE)
        self.compact_ratio = compact_ratio or config.INDEX_COMPACT_RATIO
        self._write_lock = threading.Lock()
        self._locations: Dict[str, Location] = {}
        self._snapshot = self._empty_snapshot()
        self._available = True
        self._unavailable_reason = ""

    # ------------------------------------------------------------- ANN hooks

    def _build_ann(self, vectors: np.ndarray):
        """Build the search structure for a sealed segment. None means exact scan."""
        return None

    def _search_segment(self, segment: _Segment, query: np.ndarray, fetch: int) -> List[int]:
        """Candidate rows of a sealed segment for the query."""
        return _top_rows(segment.vectors, query, fetch)

    def _serialize_ann(self, ann) -> Optional[bytes]:
        return None

    def _deserialize_ann(self, data: bytes, vectors: np.ndarray):
        return self._build_ann(vectors)

    # ---------------------------------------------------------------- writes

    def upsert(self, entry: IndexEntry) -> None:
        vector = self._prepare(entry)
        with self._write_lock:
            self._insert_locked(entry, vector)
        structured_logger.log_index_operation("upsert", entry.id, {
            "provider": self.__class__.__name__,
            "case_id": entry.case_id
        })

    def batch_upsert(self, entries: Iterable[IndexEntry]) -> int:
        inserted = 0
        for entry in entries:
            vector = self._prepare(entry)
            with self._write_lock:
                self._insert_locked(entry, vector)
            inserted += 1
        if inserted:
            structured_logger.log_index_operation("batch_upsert", f"{inserted} entries", {
                "provider": self.__class__.__name__
            })
        return inserted

    def retire(self, record_id: str) -> bool:
        with self._write_lock:
            location = self._locations.pop(record_id, None)
            if location is None:
                return False
            snap = self._snapshot
            self._snapshot = _Snapshot(snap.sealed, snap.tail, snap.tombstones | {location})
            self._maybe_compact_locked(location[0])
        structured_logger.log_index_operation("retire", record_id)
        return True

    def contains(self, record_id: str) -> bool:
        return record_id in self._locations

    def clear(self) -> None:
        with self._write_lock:
            self._locations = {}
            self._snapshot = self._empty_snapshot()

    def _prepare(self, entry: IndexEntry) -> np.ndarray:
        if entry.vector is None:
            raise ValidationError(f"Entry {entry.id} has no vector")
        if len(entry.vector) != self.dimension:
            raise InvalidVectorDimension(self.dimension, len(entry.vector))
        vector = normalize(entry.vector)
        if float(np.linalg.norm(vector)) == 0.0:
            raise ValidationError(f"Entry {entry.id} has a zero vector")
        return vector

    def _insert_locked(self, entry: IndexEntry, vector: np.ndarray):
        snap = self._snapshot

        previous = self._locations.get(entry.id)
        if previous is not None:
            snap = _Snapshot(snap.sealed, snap.tail, snap.tombstones | {previous})
            self._snapshot = snap

        tail = snap.tail
        if tail.count >= self.segment_size:
            snap = self._seal_locked(snap)
            tail = snap.tail
        elif tail.count >= tail.capacity:
            tail = tail.grown(min(self.segment_size, tail.capacity * 2))
            snap = _Snapshot(snap.sealed, tail, snap.tombstones)
            self._snapshot = snap

        row = tail.count
        tail.vectors[row] = vector
        tail.entries[row] = entry.without_vector()
        # Publishing the row: readers only look below count
        tail.count = row + 1
        self._locations[entry.id] = (len(snap.sealed), row)

        if previous is not None:
            self._maybe_compact_locked(previous[0])

    def _seal_locked(self, snap: _Snapshot) -> _Snapshot:
        tail = snap.tail
        seg_no = len(snap.sealed)
        dead = {row for s, row in snap.tombstones if s == seg_no}
        segment = self._build_segment(seg_no, tail.vectors[:tail.count], tail.entries[:tail.count], dead)
        tombstones = frozenset(t for t in snap.tombstones if t[0] != seg_no)
        new_tail = _Tail(self.dimension, min(self.INITIAL_TAIL_CAPACITY, self.segment_size))

        # A tail with no live rows left is dropped instead of sealed
        sealed_segments = snap.sealed + (segment,) if segment.entries else snap.sealed
        sealed = _Snapshot(sealed_segments, new_tail, tombstones)
        self._snapshot = sealed
        logger.info(f"Sealed index segment {seg_no} with {len(segment.entries)} entries "
                    f"({len(dead)} retired rows dropped)")
        return sealed

    def _build_segment(self, seg_no: int, vectors: np.ndarray, entries, dead) -> _Segment:
        """Immutable segment of the live rows; moves their locations to the new row numbers."""
        keep = [row for row in range(len(entries)) if row not in dead]
        kept_vectors = np.array(vectors[keep], dtype=np.float32).reshape(len(keep), self.dimension)
        kept_vectors.setflags(write=False)
        kept_entries = tuple(entries[row] for row in keep)
        for new_row, entry in enumerate(kept_entries):
            self._locations[entry.id] = (seg_no, new_row)
        ann = self._build_ann(kept_vectors) if kept_entries else None
        return _Segment(vectors=kept_vectors, entries=kept_entries, ann=ann)

    def _maybe_compact_locked(self, seg_no: int) -> None:
        """Rebuild a sealed segment without its retired rows once they pass the compaction ratio."""
        snap = self._snapshot
        if seg_no >= len(snap.sealed):
            # Tail rows are dropped when the tail is sealed
            return
        segment = snap.sealed[seg_no]
        dead = {row for s, row in snap.tombstones if s == seg_no}
        if not segment.entries or len(dead) < self.compact_ratio * len(segment.entries):
            return

        compacted = self._build_segment(seg_no, segment.vectors, segment.entries, dead)
        sealed = snap.sealed[:seg_no] + (compacted,) + snap.sealed[seg_no + 1:]
        tombstones = frozenset(t for t in snap.tombstones if t[0] != seg_no)
        self._snapshot = _Snapshot(sealed, snap.tail, tombstones)
        logger.info(f"Compacted index segment {seg_no}: {len(segment.entries)} -> {len(compacted.entries)} entries")

    def seal(self) -> None:
        """Seal the current tail (used before persisting)."""
        with self._write_lock:
            if self._snapshot.tail.count:
                self._seal_locked(self._snapshot)

    def sealed_segments(self) -> Tuple[List[Tuple[np.ndarray, Tuple[IndexEntry, ...], object]], List[Location]]:
        """Sealed segment contents and tombstones of the current snapshot."""
        snap = self._snapshot
        segments = [(seg.vectors, seg.entries, seg.ann) for seg in snap.sealed]
        return segments, sorted(snap.tombstones)

    def _restore(self, segments: List[Tuple[np.ndarray, Tuple[IndexEntry, ...], object]],
                 tombstones: Iterable[Location]) -> None:
        """Install persisted sealed segments, replacing current contents."""
        with self._write_lock:
            sealed = tuple(_Segment(vectors=v, entries=e, ann=a) for v, e, a in segments)
            dead = frozenset(tuple(t) for t in tombstones)
            locations: Dict[str, Location] = {}
            for seg_no, segment in enumerate(sealed):
                for row, entry in enumerate(segment.entries):
                    if (seg_no, row) not in dead:
                        locations[entry.id] = (seg_no, row)
            self._locations = locations
            self._snapshot = _Snapshot(sealed, self._empty_snapshot().tail, dead)

    def _empty_snapshot(self) -> _Snapshot:
        return _Snapshot((), _Tail(self.dimension, min(self.INITIAL_TAIL_CAPACITY, self.segment_size)), frozenset())

    # ----------------------------------------------------------------- reads

    @property
    def available(self) -> bool:
        return self._available

    def mark_unavailable(self, reason: str = "") -> None:
        self._available = False
        self._unavailable_reason = reason
        logger.warning(f"Similarity index marked unavailable: {reason}")

    def mark_available(self) -> None:
        self._available = True
        self._unavailable_reason = ""
        logger.info("Similarity index available")

    def size(self) -> int:
        snap = self._snapshot
        return snap.total() - len(snap.tombstones)

    def query(self, vector, k: int, filters: Optional[SearchFilters] = None) -> List[QueryResult]:
        if not self._available:
            raise IndexUnavailable(self._unavailable_reason or "similarity index unavailable")
        if k < 1:
            raise ValidationError("k must be >= 1")
        if len(vector) != self.dimension:
            raise InvalidVectorDimension(self.dimension, len(vector))

        query = normalize(vector)
        if float(np.linalg.norm(query)) == 0.0:
            raise ValidationError("Query vector has zero magnitude")

        snap = self._snapshot
        tail_count = snap.tail.count
        total = sum(len(seg.entries) for seg in snap.sealed) + tail_count
        if total == 0:
            return []

        if filters is not None and filters.is_empty():
            filters = None

        # Each segment is asked for its share plus its own retired rows, never the global count
        dead = Counter(seg_no for seg_no, _ in snap.tombstones)
        largest = max([len(seg.entries) for seg in snap.sealed] + [tail_count])
        fetch = min(largest, k * self.oversample)
        while True:
            try:
                results = self._collect(snap, tail_count, query, fetch, filters, dead)
            except RuntimeError as e:
                raise IndexUnavailable(f"index search failed: {e}") from e
            if len(results) >= k or fetch >= largest:
                break
            # Filters pruned too much; widen the candidate pool
            fetch = min(largest, fetch * 2)

        results.sort(key=lambda r: (-r.score, -r.created_at.timestamp()))
        return results[:k]

    def _collect(self, snap: _Snapshot, tail_count: int, query: np.ndarray, fetch: int,
                 filters: Optional[SearchFilters], dead: Dict[int, int]) -> List[QueryResult]:
        results: List[QueryResult] = []

        def consider(seg_no: int, row: int, vectors: np.ndarray, entry: IndexEntry):
            if (seg_no, row) in snap.tombstones:
                return
            if filters is not None and not filters.accepts(entry):
                return
            # Re-validate against the exact vector regardless of what the ANN reported
            score = float(np.dot(query, vectors[row]))
            results.append(QueryResult(
                id=entry.id,
                case_id=entry.case_id,
                score=min(1.0, max(0.0, score)),
                created_at=entry.created_at,
                metadata={
                    "location": entry.location,
                    "observed_at": entry.observed_at,
                    "demographic_bucket": entry.demographic_bucket,
                },
            ))

        for seg_no, segment in enumerate(snap.sealed):
            budget = min(len(segment.entries), fetch + dead.get(seg_no, 0))
            for row in self._search_segment(segment, query, budget):
                consider(seg_no, row, segment.vectors, segment.entries[row])

        if tail_count:
            tail = snap.tail
            tail_vectors = tail.vectors[:tail_count]
            budget = min(tail_count, fetch + dead.get(len(snap.sealed), 0))
            for row in _top_rows(tail_vectors, query, budget):
                consider(len(snap.sealed), row, tail_vectors, tail.entries[row])

        return results

    def attribution(self, vector, record_id: str, regions: Dict[str, Tuple[int, int]]) -> Dict[str, float]:
        location = self._locations.get(record_id)
        if location is None or not regions:
            return {}

        snap = self._snapshot
        seg_no, row = location
        if seg_no < len(snap.sealed):
            segment = snap.sealed[seg_no]
            if row >= len(segment.entries) or segment.entries[row].id != record_id:
                # Location moved by a concurrent compaction
                return {}
            stored = segment.vectors[row]
        elif row < snap.tail.count and snap.tail.entries[row].id == record_id:
            stored = snap.tail.vectors[row]
        else:
            return {}

        contributions = normalize(vector) * stored
        region_scores = {
            name: max(0.0, float(np.sum(contributions[start:end])))
            for name, (start, end) in regions.items()
        }
        total = sum(region_scores.values())
        if total <= 0.0:
            return {name: 0.0 for name in region_scores}
        return {name: round(score / total, 4) for name, score in region_scores.items()}


def _top_rows(vectors: np.ndarray, query: np.ndarray, fetch: int) -> List[int]:
    if fetch <= 0 or vectors.shape[0] == 0:
        return []
    scores = vectors @ query
    if fetch >= scores.shape[0]:
        return [int(i) for i in np.argsort(-scores)]
    top = np.argpartition(-scores, fetch - 1)[:fetch]
    return [int(i) for i in top[np.argsort(-scores[top])]]


class RecentActivityScanner:
    """
    Bounded-latency exact linear scan over the most recent embeddings.

    Used when the index is unavailable. The scan stops at the configured record
    limit or deadline, whichever comes first, and reports whether it finished.
    """

    def __init__(self, store, entry_builder: Callable[[EmbeddingRecord], IndexEntry],
                 limit: Optional[int] = None, deadline_ms: Optional[int] = None):
        self.store = store
        self.entry_builder = entry_builder
        self.limit = limit or config.FALLBACK_SCAN_LIMIT
        self.deadline_ms = deadline_ms or config.FALLBACK_SCAN_DEADLINE_MS

    def scan(self, vector, k: int, filters: Optional[SearchFilters] = None) -> Tuple[List[QueryResult], bool]:
        query = normalize(vector)
        deadline = time.monotonic() + self.deadline_ms / 1000.0
        seen_versions: Dict[str, str] = {}
        heap: List[Tuple[float, float, int, QueryResult]] = []
        complete = True
        scanned = 0

        for record in self.store.recent(self.limit):
            if time.monotonic() > deadline:
                complete = False
                break
            scanned += 1
            # Newest first: the first record of a case fixes its current model version
            version = seen_versions.setdefault(record.subject_case_id, record.model_version)
            if record.model_version != version:
                continue

            entry = self.entry_builder(record)
            if filters is not None and not filters.accepts(entry):
                continue

            score = min(1.0, max(0.0, float(np.dot(query, normalize(record.vector)))))
            result = QueryResult(
                id=record.id,
                case_id=record.subject_case_id,
                score=score,
                created_at=record.created_at,
                metadata={
                    "location": entry.location,
                    "observed_at": entry.observed_at,
                    "demographic_bucket": entry.demographic_bucket,
                },
            )
            item = (score, record.created_at.timestamp(), scanned, result)
            if len(heap) < k:
                heapq.heappush(heap, item)
            elif item[:2] > heap[0][:2]:
                heapq.heapreplace(heap, item)

        results = [item[3] for item in heap]
        results.sort(key=lambda r: (-r.score, -r.created_at.timestamp()))
        logger.warning(f"Degraded-mode scan covered {scanned} records (complete={complete})")
        return results, complete
