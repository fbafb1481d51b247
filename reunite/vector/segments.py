"""
Encrypted-at-rest persistence of sealed index segments.

Layout: one encrypted file per segment plus a manifest naming each file's key
reference. The tail is sealed before saving so everything persisted is immutable.
"""

import io
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import numpy as np

from ..core.crypto import IKeyManager, decrypt_data, encrypt_data
from ..core.schema import GeoPoint, utcnow
from .index import SegmentedIndex
from .types import IndexEntry

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


def _entry_to_dict(entry: IndexEntry) -> dict:
    return {
        "id": entry.id,
        "case_id": entry.case_id,
        "created_at": entry.created_at.isoformat(),
        "lat": entry.location.lat if entry.location else None,
        "lon": entry.location.lon if entry.location else None,
        "observed_at": entry.observed_at.isoformat() if entry.observed_at else None,
        "demographic_bucket": entry.demographic_bucket,
    }


def _entry_from_dict(data: dict) -> IndexEntry:
    location = None
    if data.get("lat") is not None and data.get("lon") is not None:
        location = GeoPoint(data["lat"], data["lon"])
    return IndexEntry(
        id=data["id"],
        case_id=data["case_id"],
        created_at=datetime.fromisoformat(data["created_at"]),
        location=location,
        observed_at=datetime.fromisoformat(data["observed_at"]) if data.get("observed_at") else None,
        demographic_bucket=data.get("demographic_bucket"),
    )


def save_index(index: SegmentedIndex, directory: str, key_manager: IKeyManager) -> int:
    """Persist all sealed segments; returns the number of segment files written."""
    index.seal()
    segments, tombstones = index.sealed_segments()

    target = Path(directory)
    target.mkdir(parents=True, exist_ok=True)

    manifest_segments = []
    for seg_no, (vectors, entries, ann) in enumerate(segments):
        buffer = io.BytesIO()
        ann_bytes = index._serialize_ann(ann) or b""
        np.savez(buffer, vectors=vectors, ann=np.frombuffer(ann_bytes, dtype=np.uint8))
        body = json.dumps([_entry_to_dict(e) for e in entries]).encode()

        key_ref = key_manager.new_key_ref()
        key = key_manager.resolve(key_ref)
        file_name = f"segment_{seg_no:05d}"
        (target / f"{file_name}.npz.enc").write_bytes(encrypt_data(buffer.getvalue(), key, file_name.encode()))
        (target / f"{file_name}.json.enc").write_bytes(encrypt_data(body, key, file_name.encode()))
        manifest_segments.append({"file": file_name, "key_ref": key_ref, "rows": len(entries)})

    manifest = {
        "dimension": index.dimension,
        "saved_at": utcnow().isoformat(),
        "segments": manifest_segments,
        "tombstones": [list(t) for t in tombstones],
    }
    (target / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2))
    logger.info(f"Saved {len(manifest_segments)} index segments to {directory}")
    return len(manifest_segments)


def load_index(index: SegmentedIndex, directory: str, key_manager: IKeyManager) -> Optional[int]:
    """Load persisted segments into an index; returns entry count, or None if nothing is saved."""
    source = Path(directory)
    manifest_path = source / MANIFEST_NAME
    if not manifest_path.exists():
        return None

    manifest = json.loads(manifest_path.read_text())
    if manifest["dimension"] != index.dimension:
        raise ValueError(f"Persisted index dimension {manifest['dimension']} != {index.dimension}")

    segments: List = []
    for seg in manifest["segments"]:
        key = key_manager.resolve(seg["key_ref"])
        aad = seg["file"].encode()
        arrays = np.load(io.BytesIO(decrypt_data((source / f"{seg['file']}.npz.enc").read_bytes(), key, aad)))
        entries = tuple(_entry_from_dict(d) for d in
                        json.loads(decrypt_data((source / f"{seg['file']}.json.enc").read_bytes(), key, aad)))
        vectors = arrays["vectors"].astype(np.float32)
        vectors.setflags(write=False)
        ann = index._deserialize_ann(arrays["ann"].tobytes(), vectors)
        segments.append((vectors, entries, ann))

    index._restore(segments, manifest["tombstones"])
    loaded = sum(seg["rows"] for seg in manifest["segments"])
    logger.info(f"Loaded {len(segments)} index segments ({loaded} rows) from {directory}")
    return loaded
