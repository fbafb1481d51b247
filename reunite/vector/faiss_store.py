"""
FAISS-backed segmented similarity index.

Each sealed segment gets its own FAISS inner-product index (HNSW graph or
flat), so inserts never trigger a rebuild of existing segments. `ef_search`
is the recall/latency knob; every candidate FAISS returns is re-scored
against the exact stored vector before it is ranked.
"""

from typing import List, Optional

import numpy as np

from ..core import config
from .index import SegmentedIndex, _Segment


class FaissSegmentedIndex(SegmentedIndex):
    """Segmented index with a FAISS structure per sealed segment."""

    def __init__(self, dimension: Optional[int] = None, segment_size: Optional[int] = None,
                 oversample: Optional[int] = None, provider: Optional[str] = None,
                 hnsw_m: Optional[int] = None, ef_construction: Optional[int] = None,
                 ef_search: Optional[int] = None):
        """
        Initialize FAISS segmented index.

        Args:
            dimension: Dimension of the vectors
            segment_size: Entries per sealed segment
            oversample: Candidates fetched per requested result before re-scoring
            provider: 'hnsw' for graph search or 'flat' for exhaustive inner product
            hnsw_m: Graph degree for HNSW segments
            ef_construction: HNSW build-time candidate list size
            ef_search: HNSW query-time candidate list size (higher = better recall, slower)
        """
        try:
            import faiss
            self.faiss = faiss
        except ImportError:
            raise ImportError("FAISS not installed. Please install faiss-cpu package.")

        super().__init__(dimension=dimension, segment_size=segment_size, oversample=oversample)
        self.provider = provider or config.INDEX_PROVIDER
        if self.provider not in ("hnsw", "flat"):
            raise ValueError(f"Unsupported FAISS provider: {self.provider}")
        self.hnsw_m = hnsw_m or config.HNSW_M
        self.ef_construction = ef_construction or config.HNSW_EF_CONSTRUCTION
        self.ef_search = ef_search or config.HNSW_EF_SEARCH

    def set_ef_search(self, ef_search: int) -> None:
        """Tune recall against latency for subsequent queries."""
        if ef_search < 1:
            raise ValueError("ef_search must be >= 1")
        self.ef_search = ef_search

    def _build_ann(self, vectors: np.ndarray):
        if self.provider == "hnsw":
            index = self.faiss.IndexHNSWFlat(self.dimension, self.hnsw_m, self.faiss.METRIC_INNER_PRODUCT)
            index.hnsw.efConstruction = self.ef_construction
        else:
            index = self.faiss.IndexFlatIP(self.dimension)
        index.add(np.ascontiguousarray(vectors, dtype=np.float32))
        return index

    def _search_segment(self, segment: _Segment, query: np.ndarray, fetch: int) -> List[int]:
        if segment.ann is None or fetch <= 0:
            return super()._search_segment(segment, query, fetch)

        query_array = np.ascontiguousarray(query.reshape(1, -1), dtype=np.float32)
        if self.provider == "hnsw":
            # Per-call parameters so concurrent queries never mutate shared index state
            params = self.faiss.SearchParametersHNSW(efSearch=max(self.ef_search, fetch))
            _, indices = segment.ann.search(query_array, fetch, params=params)
        else:
            _, indices = segment.ann.search(query_array, fetch)
        return [int(i) for i in indices[0] if i >= 0]

    def _serialize_ann(self, ann) -> Optional[bytes]:
        if ann is None:
            return None
        return self.faiss.serialize_index(ann).tobytes()

    def _deserialize_ann(self, data: bytes, vectors: np.ndarray):
        if not data:
            return self._build_ann(vectors)
        return self.faiss.deserialize_index(np.frombuffer(data, dtype=np.uint8).copy())


def create_index(provider: Optional[str] = None, dimension: Optional[int] = None, **kwargs) -> SegmentedIndex:
    """Get configured similarity index implementation."""
    provider = provider or config.INDEX_PROVIDER
    if provider == "memory":
        return SegmentedIndex(dimension=dimension, **{k: v for k, v in kwargs.items()
                                                      if k in ("segment_size", "oversample")})
    return FaissSegmentedIndex(dimension=dimension, provider=provider, **kwargs)
