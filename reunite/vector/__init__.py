"""
Similarity index package.
"""

from .index import ISimilarityIndex, SegmentedIndex, RecentActivityScanner
from .faiss_store import FaissSegmentedIndex, create_index
from .types import IndexEntry, QueryResult, SearchFilters, normalize
from .segments import save_index, load_index

__all__ = [
    'ISimilarityIndex',
    'SegmentedIndex',
    'RecentActivityScanner',
    'FaissSegmentedIndex',
    'create_index',
    'IndexEntry',
    'QueryResult',
    'SearchFilters',
    'normalize',
    'save_index',
    'load_index',
]
