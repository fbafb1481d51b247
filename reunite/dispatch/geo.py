"""
Geo-spatial helpers and the subscriber location index.
"""

import logging
import math
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from ..core.db import get_db, init_db
from ..core.errors import ValidationError
from ..core.schema import Bounds, GeoPoint

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371008.8
METERS_PER_DEGREE_LAT = 111320.0
CHANNELS = ("push", "sms", "kiosk")


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in meters."""
    lat1, lon1, lat2, lon2 = map(math.radians, (a.lat, a.lon, b.lat, b.lon))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def bounding_box(center: GeoPoint, radius_m: float) -> Bounds:
    """Lat/lon box enclosing a circle; longitudes may fall outside [-180, 180] near the antimeridian."""
    dlat = radius_m / METERS_PER_DEGREE_LAT
    cos_lat = math.cos(math.radians(center.lat))
    if cos_lat < 1e-6 or center.lat + dlat >= 90 or center.lat - dlat <= -90:
        dlon = 180.0
    else:
        dlon = min(180.0, radius_m / (METERS_PER_DEGREE_LAT * cos_lat))
    return (max(-90.0, center.lat - dlat), center.lon - dlon,
            min(90.0, center.lat + dlat), center.lon + dlon)


def box_contains(bounds: Bounds, point: GeoPoint) -> bool:
    min_lat, min_lon, max_lat, max_lon = bounds
    return min_lat <= point.lat <= max_lat and min_lon <= point.lon <= max_lon


@dataclass(frozen=True)
class Subscriber:
    subscriber_id: str
    location: GeoPoint
    channel: str = "push"
    low_bandwidth: bool = False


class SubscriberIndex:
    """Grid index over subscriber locations, persisted in the subscribers table."""

    def __init__(self, db_path: Optional[str] = None, cell_degrees: float = 0.1):
        self.db_path = db_path
        self.cell_degrees = cell_degrees
        self._cells: Dict[Tuple[int, int], Dict[str, Subscriber]] = defaultdict(dict)
        self._by_id: Dict[str, Subscriber] = {}
        self._lock = threading.Lock()
        init_db(db_path)
        self._load()

    def _cell(self, point: GeoPoint) -> Tuple[int, int]:
        return (math.floor(point.lat / self.cell_degrees), math.floor(point.lon / self.cell_degrees))

    def _load(self):
        with get_db(self.db_path) as conn:
            rows = conn.execute("SELECT subscriber_id, lat, lon, channel, low_bandwidth FROM subscribers").fetchall()
        for subscriber_id, lat, lon, channel, low_bandwidth in rows:
            self._put(Subscriber(subscriber_id, GeoPoint(lat, lon), channel, bool(low_bandwidth)))
        logger.info(f"Loaded {len(rows)} alert subscribers")

    def _put(self, subscriber: Subscriber):
        previous = self._by_id.get(subscriber.subscriber_id)
        if previous is not None:
            self._cells[self._cell(previous.location)].pop(subscriber.subscriber_id, None)
        self._cells[self._cell(subscriber.location)][subscriber.subscriber_id] = subscriber
        self._by_id[subscriber.subscriber_id] = subscriber

    def add_subscriber(self, subscriber: Subscriber) -> Subscriber:
        if not subscriber.subscriber_id:
            raise ValidationError("subscriber_id cannot be empty")
        if subscriber.channel not in CHANNELS:
            raise ValidationError(f"channel must be one of: {list(CHANNELS)}")

        with self._lock:
            with get_db(self.db_path) as conn:
                conn.execute(
                    "INSERT INTO subscribers (subscriber_id, lat, lon, channel, low_bandwidth) VALUES (?, ?, ?, ?, ?) "
                    "ON CONFLICT(subscriber_id) DO UPDATE SET lat = excluded.lat, lon = excluded.lon, "
                    "channel = excluded.channel, low_bandwidth = excluded.low_bandwidth",
                    (subscriber.subscriber_id, subscriber.location.lat, subscriber.location.lon,
                     subscriber.channel, subscriber.low_bandwidth)
                )
                conn.commit()
            self._put(subscriber)
        return subscriber

    def bulk_add(self, subscribers: List[Subscriber]) -> int:
        with self._lock:
            with get_db(self.db_path) as conn:
                conn.executemany(
                    "INSERT OR REPLACE INTO subscribers (subscriber_id, lat, lon, channel, low_bandwidth) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [(s.subscriber_id, s.location.lat, s.location.lon, s.channel, s.low_bandwidth)
                     for s in subscribers]
                )
                conn.commit()
            for subscriber in subscribers:
                self._put(subscriber)
        return len(subscribers)

    def get(self, subscriber_id: str) -> Optional[Subscriber]:
        return self._by_id.get(subscriber_id)

    def count(self) -> int:
        return len(self._by_id)

    def _scan_box(self, bounds: Bounds) -> Iterator[Subscriber]:
        min_lat, min_lon, max_lat, max_lon = bounds
        row_lo = math.floor(min_lat / self.cell_degrees)
        row_hi = math.floor(max_lat / self.cell_degrees)
        if max_lon - min_lon >= 360.0:
            min_lon, max_lon = -180.0, 180.0
        col_lo = math.floor(min_lon / self.cell_degrees)
        col_hi = math.floor(max_lon / self.cell_degrees)
        cols_per_turn = round(360.0 / self.cell_degrees)
        half_turn = cols_per_turn // 2

        with self._lock:
            seen_cols = set()
            cells = []
            for col in range(col_lo, col_hi + 1):
                # Wrap columns across the antimeridian
                wrapped = ((col + half_turn) % cols_per_turn) - half_turn
                if wrapped in seen_cols:
                    continue
                seen_cols.add(wrapped)
                for row in range(row_lo, row_hi + 1):
                    bucket = self._cells.get((row, wrapped))
                    if bucket:
                        cells.append(list(bucket.values()))
        for bucket in cells:
            yield from bucket

    def within_radius(self, center: GeoPoint, radius_m: float) -> List[Tuple[Subscriber, float]]:
        """Subscribers within radius_m of center, nearest first."""
        if radius_m <= 0:
            raise ValidationError("radius must be positive")
        matches = []
        for subscriber in self._scan_box(bounding_box(center, radius_m)):
            distance = haversine_m(center, subscriber.location)
            if distance <= radius_m:
                matches.append((subscriber, distance))
        matches.sort(key=lambda item: (item[1], item[0].subscriber_id))
        return matches

    def within_box(self, bounds: Bounds, center: Optional[GeoPoint] = None) -> List[Tuple[Subscriber, float]]:
        """Subscribers inside a region box, nearest to center first when given."""
        matches = []
        for subscriber in self._scan_box(bounds):
            if box_contains(bounds, subscriber.location):
                distance = haversine_m(center, subscriber.location) if center else 0.0
                matches.append((subscriber, distance))
        matches.sort(key=lambda item: (item[1], item[0].subscriber_id))
        return matches
