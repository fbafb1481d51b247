"""
Case directory: the attributes of each case that ranking and deduplication need.

The case collaborator owns case lifecycle; this directory only mirrors what it
sends (creation time, last-seen context, demographic bucket, minor flag).
"""

from datetime import datetime
from typing import Dict, Iterable, Optional

from .db import get_db, init_db
from .errors import ValidationError
from .schema import CaseProfile, GeoPoint


def _row_to_profile(row) -> CaseProfile:
    case_id, created_at, minor, lat, lon, last_seen_at, bucket, published = row
    return CaseProfile(
        case_id=case_id,
        created_at=datetime.fromisoformat(created_at),
        subject_is_minor=bool(minor),
        last_seen_location=GeoPoint(lat, lon) if lat is not None and lon is not None else None,
        last_seen_at=datetime.fromisoformat(last_seen_at) if last_seen_at else None,
        demographic_bucket=bucket,
        published=bool(published),
    )


_SELECT_CASES = ("SELECT case_id, created_at, subject_is_minor, last_seen_lat, last_seen_lon, "
                 "last_seen_at, demographic_bucket, published FROM cases")


class CaseDirectory:
    """SQLite-backed read model of case attributes."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path
        init_db(db_path)

    def register_case(self, profile: CaseProfile) -> CaseProfile:
        if not profile.case_id or not profile.case_id.strip():
            raise ValidationError("case_id cannot be empty")

        location = profile.last_seen_location
        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO cases (case_id, created_at, subject_is_minor, last_seen_lat, last_seen_lon, "
                "last_seen_at, demographic_bucket, published) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(case_id) DO UPDATE SET subject_is_minor = excluded.subject_is_minor, "
                "last_seen_lat = excluded.last_seen_lat, last_seen_lon = excluded.last_seen_lon, "
                "last_seen_at = excluded.last_seen_at, demographic_bucket = excluded.demographic_bucket",
                (profile.case_id, profile.created_at.isoformat(), profile.subject_is_minor,
                 location.lat if location else None, location.lon if location else None,
                 profile.last_seen_at.isoformat() if profile.last_seen_at else None,
                 profile.demographic_bucket, profile.published)
            )
            conn.commit()
        return profile

    def get_case(self, case_id: str) -> Optional[CaseProfile]:
        with get_db(self.db_path) as conn:
            row = conn.execute(_SELECT_CASES + " WHERE case_id = ?", (case_id,)).fetchone()
        return _row_to_profile(row) if row else None

    def get_cases(self, case_ids: Iterable[str]) -> Dict[str, CaseProfile]:
        ids = list(dict.fromkeys(case_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with get_db(self.db_path) as conn:
            rows = conn.execute(_SELECT_CASES + f" WHERE case_id IN ({placeholders})", ids).fetchall()
        return {row[0]: _row_to_profile(row) for row in rows}

    def update_last_seen(self, case_id: str, location: GeoPoint, seen_at: datetime):
        with get_db(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE cases SET last_seen_lat = ?, last_seen_lon = ?, last_seen_at = ? WHERE case_id = ?",
                (location.lat, location.lon, seen_at.isoformat(), case_id)
            )
            conn.commit()
        if cursor.rowcount == 0:
            raise ValidationError(f"Unknown case: {case_id}")

    def mark_published(self, case_id: str):
        with get_db(self.db_path) as conn:
            conn.execute("UPDATE cases SET published = TRUE WHERE case_id = ?", (case_id,))
            conn.commit()
