"""
Similarity index tests - recall, ordering, filters, supersession, concurrency and persistence.
"""

import threading
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from reunite.core.crypto import LocalKeyManager
from reunite.core.errors import IndexUnavailable, InvalidVectorDimension, ValidationError
from reunite.core.schema import GeoPoint
from reunite.vector import (
    FaissSegmentedIndex, IndexEntry, RecentActivityScanner, SearchFilters, SegmentedIndex,
    create_index, load_index, save_index,
)

from conftest import DIM, near, random_vector, unit

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _entry(i, vector, case_id=None, **kwargs):
    return IndexEntry(
        id=f"rec-{i}",
        case_id=case_id or f"case-{i}",
        created_at=kwargs.pop("created_at", BASE_TIME + timedelta(minutes=i)),
        vector=vector,
        **kwargs
    )


def _populate(index, rng, n):
    vectors = [random_vector(rng) for _ in range(n)]
    index.batch_upsert(_entry(i, v) for i, v in enumerate(vectors))
    return vectors


@pytest.fixture(params=["memory", "flat", "hnsw"])
def index(request):
    return create_index(request.param, dimension=DIM, segment_size=50, oversample=4)


class TestQuery:

    def test_reinserted_embedding_is_top1(self, index, rng):
        vectors = _populate(index, rng, 180)
        for i in (0, 57, 121, 179):
            results = index.query(vectors[i], k=5)
            assert results[0].id == f"rec-{i}"
            assert results[0].score >= 0.99

    def test_results_ordered_descending(self, index, rng):
        _populate(index, rng, 120)
        results = index.query(random_vector(rng), k=20)
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert all(0.0 <= s <= 1.0 for s in scores)

    def test_ties_break_by_newest(self, index, rng):
        vector = random_vector(rng)
        index.upsert(_entry(1, vector, created_at=BASE_TIME))
        index.upsert(_entry(2, vector, created_at=BASE_TIME + timedelta(days=1)))
        results = index.query(vector, k=2)
        assert [r.id for r in results] == ["rec-2", "rec-1"]

    def test_dimension_and_k_validation(self, index, rng):
        _populate(index, rng, 3)
        with pytest.raises(InvalidVectorDimension):
            index.query([1.0] * (DIM + 1), k=1)
        with pytest.raises(ValidationError):
            index.query(random_vector(rng), k=0)
        with pytest.raises(ValidationError):
            index.query([0.0] * DIM, k=1)

    def test_empty_index(self, index, rng):
        assert index.query(random_vector(rng), k=3) == []

    def test_unavailable_raises(self, index, rng):
        _populate(index, rng, 3)
        index.mark_unavailable("maintenance")
        with pytest.raises(IndexUnavailable):
            index.query(random_vector(rng), k=1)
        index.mark_available()
        assert index.query(random_vector(rng), k=1)


class TestFilters:

    def test_demographic_post_filter_widens_fetch(self, rng):
        index = SegmentedIndex(dimension=DIM, segment_size=40, oversample=2)
        query = random_vector(rng)
        # The closest entries are all in the wrong bucket
        for i in range(60):
            index.upsert(_entry(i, near(query, 0.95, rng), demographic_bucket="M:30-39"))
        target = near(query, 0.5, rng)
        index.upsert(_entry(100, target, demographic_bucket="F:10-14"))

        results = index.query(query, k=1, filters=SearchFilters(demographic_bucket="F:10-14"))
        assert [r.id for r in results] == ["rec-100"]

    def test_geo_and_time_filters(self, rng):
        index = SegmentedIndex(dimension=DIM)
        vector = random_vector(rng)
        index.upsert(_entry(1, vector, location=GeoPoint(40.0, -74.0), observed_at=BASE_TIME))
        index.upsert(_entry(2, vector, location=GeoPoint(34.0, -118.0), observed_at=BASE_TIME))
        index.upsert(_entry(3, vector, location=GeoPoint(40.01, -74.01),
                            observed_at=BASE_TIME - timedelta(days=30)))

        geo = SearchFilters(center=GeoPoint(40.0, -74.0), radius_m=5000)
        assert {r.id for r in index.query(vector, 5, geo)} == {"rec-1", "rec-3"}

        both = SearchFilters(center=GeoPoint(40.0, -74.0), radius_m=5000,
                             since=BASE_TIME - timedelta(days=1))
        assert [r.id for r in index.query(vector, 5, both)] == ["rec-1"]


class TestSupersession:

    def test_retired_entries_are_not_returned(self, index, rng):
        vectors = _populate(index, rng, 80)
        assert index.retire("rec-10")
        assert not index.retire("rec-10")
        assert all(r.id != "rec-10" for r in index.query(vectors[10], k=10))
        assert index.size() == 79

    def test_retired_rows_are_compacted_out_of_sealed_segments(self, rng):
        index = SegmentedIndex(dimension=DIM, segment_size=20, compact_ratio=0.25)
        vectors = _populate(index, rng, 45)
        for i in range(4):
            index.retire(f"rec-{i}")
        segments, tombstones = index.sealed_segments()
        assert len(segments[0][1]) == 20
        assert len(tombstones) == 4

        index.retire("rec-4")
        segments, tombstones = index.sealed_segments()
        assert len(segments[0][1]) == 15
        assert tombstones == []
        assert index.size() == 40
        assert index.contains("rec-12")
        assert not index.contains("rec-2")
        assert index.query(vectors[12], k=1)[0].id == "rec-12"
        assert index.query(vectors[30], k=1)[0].id == "rec-30"

    def test_replaced_rows_compact_sealed_segment(self, rng):
        index = SegmentedIndex(dimension=DIM, segment_size=10, compact_ratio=0.5)
        _populate(index, rng, 15)
        fresh = [random_vector(rng) for _ in range(5)]
        for i, vector in enumerate(fresh):
            index.upsert(_entry(i, vector))

        segments, tombstones = index.sealed_segments()
        assert len(segments[0][1]) == 5
        assert tombstones == []
        assert index.size() == 15
        for i, vector in enumerate(fresh):
            assert index.query(vector, k=1)[0].id == f"rec-{i}"

    def test_segment_fetch_bounded_by_its_own_retired_rows(self, rng):
        budgets = []

        class RecordingIndex(SegmentedIndex):
            def _search_segment(self, segment, query, fetch):
                budgets.append(fetch)
                return super()._search_segment(segment, query, fetch)

        index = RecordingIndex(dimension=DIM, segment_size=50, oversample=2, compact_ratio=0.5)
        vectors = _populate(index, rng, 150)
        for i in range(10):
            index.retire(f"rec-{i}")

        results = index.query(vectors[70], k=3)
        assert results[0].id == "rec-70"
        assert budgets == [16, 6]

    def test_upsert_same_id_replaces(self, rng):
        index = SegmentedIndex(dimension=DIM)
        old, new = random_vector(rng), random_vector(rng)
        index.upsert(_entry(1, old))
        index.upsert(_entry(1, new))
        assert index.size() == 1
        assert index.query(new, k=1)[0].score >= 0.99

    def test_clear(self, index, rng):
        _populate(index, rng, 10)
        index.clear()
        assert index.size() == 0


class TestConcurrency:

    def test_queries_run_during_inserts(self, rng):
        index = SegmentedIndex(dimension=DIM, segment_size=32)
        seed = [random_vector(rng) for _ in range(50)]
        index.batch_upsert(_entry(i, v) for i, v in enumerate(seed))
        extra = [random_vector(rng) for _ in range(300)]
        errors = []

        def writer():
            for i, v in enumerate(extra):
                index.upsert(_entry(1000 + i, v))

        def reader():
            try:
                for _ in range(100):
                    results = index.query(seed[7], k=3)
                    assert results[0].id == "rec-7"
            except AssertionError as e:
                errors.append(e)

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert index.size() == 350


class TestAttribution:

    def test_shares_sum_to_one(self, rng):
        index = SegmentedIndex(dimension=DIM)
        vector = random_vector(rng)
        index.upsert(_entry(1, vector))
        regions = {"a": (0, 8), "b": (8, 16)}
        shares = index.attribution(vector, "rec-1", regions)
        assert set(shares) == {"a", "b"}
        assert abs(sum(shares.values()) - 1.0) < 1e-3

    def test_unknown_record(self, rng):
        assert SegmentedIndex(dimension=DIM).attribution(random_vector(rng), "nope", {"a": (0, 4)}) == {}


class TestFaissIndex:

    def test_ef_search_knob(self):
        index = FaissSegmentedIndex(dimension=DIM, provider="hnsw", ef_search=16)
        index.set_ef_search(256)
        assert index.ef_search == 256
        with pytest.raises(ValueError):
            index.set_ef_search(0)

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            FaissSegmentedIndex(dimension=DIM, provider="ivf")


class TestSegmentPersistence:

    @pytest.mark.parametrize("provider", ["memory", "hnsw"])
    def test_save_and_load(self, tmp_path, rng, provider):
        keys = LocalKeyManager("secret", "k1")
        index = create_index(provider, dimension=DIM, segment_size=30)
        vectors = _populate(index, rng, 75)
        index.retire("rec-3")

        written = save_index(index, str(tmp_path / "segments"), keys)
        assert written == 3

        restored = create_index(provider, dimension=DIM, segment_size=30)
        assert load_index(restored, str(tmp_path / "segments"), keys) == 75
        assert restored.size() == 74
        assert restored.query(vectors[40], k=1)[0].id == "rec-40"
        assert all(r.id != "rec-3" for r in restored.query(vectors[3], k=5))

    def test_segment_files_are_encrypted(self, tmp_path, rng):
        keys = LocalKeyManager("secret", "k1")
        index = SegmentedIndex(dimension=DIM)
        _populate(index, rng, 5)
        save_index(index, str(tmp_path), keys)
        body = (tmp_path / "segment_00000.json.enc").read_bytes()
        assert b"case-1" not in body

    def test_load_missing_directory(self, tmp_path):
        assert load_index(SegmentedIndex(dimension=DIM), str(tmp_path / "none"), LocalKeyManager("s")) is None


class TestRecentActivityScanner:

    class _Store:
        def __init__(self, records):
            self.records = records

        def recent(self, limit):
            return iter(self.records[:limit])

    def _record(self, i, case_id, vector, minutes, model_version="m1"):
        from reunite.core.schema import EmbeddingRecord
        return EmbeddingRecord(id=f"rec-{i}", subject_case_id=case_id, vector=vector, model_version=model_version,
                               created_at=BASE_TIME + timedelta(minutes=minutes), encryption_key_ref="k1/x")

    def _builder(self, record):
        return IndexEntry(id=record.id, case_id=record.subject_case_id, created_at=record.created_at)

    def test_newest_model_version_per_case_wins(self, rng):
        query = random_vector(rng)
        records = [
            self._record(2, "case-a", near(query, 0.3, rng), 10, model_version="m2"),
            self._record(1, "case-a", query, 5),
            self._record(3, "case-b", near(query, 0.8, rng), 1),
        ]
        scanner = RecentActivityScanner(self._Store(records), self._builder, limit=100, deadline_ms=5000)
        results, complete = scanner.scan(query, k=5)
        assert complete
        assert [r.id for r in results] == ["rec-3", "rec-2"]

    def test_limit_bounds_scan(self, rng):
        records = [self._record(i, f"case-{i}", random_vector(rng), -i) for i in range(10)]
        scanner = RecentActivityScanner(self._Store(records), self._builder, limit=3, deadline_ms=5000)
        results, _ = scanner.scan(random_vector(rng), k=10)
        assert len(results) == 3

    def test_photos_under_same_model_version_are_all_scanned(self, rng):
        query = random_vector(rng)
        records = [
            self._record(2, "case-a", near(query, 0.3, rng), 10),
            self._record(1, "case-a", query, 5),
        ]
        scanner = RecentActivityScanner(self._Store(records), self._builder, limit=100, deadline_ms=5000)
        results, _ = scanner.scan(query, k=5)
        assert [r.id for r in results] == ["rec-1", "rec-2"]
