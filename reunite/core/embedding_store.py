"""
Embedding Store: durable, encrypted-at-rest repository of biometric vectors.

Records are immutable and a case may hold several photos. Re-embedding a
subject under a new model writes new records that supersede those of every
other model version. Any read that is not part of the index's own similarity
computation is logged to the ledger.
"""

import logging
import uuid
from datetime import datetime
from typing import Iterator, List, Optional

import numpy as np

from util.logging import logger as structured_logger

from . import config
from .crypto import IKeyManager, LocalKeyManager, decrypt_vector, encrypt_vector
from .db import get_db, init_db
from .errors import IntegrityFault, InvalidVectorDimension, ValidationError
from .ledger import AuditLedger
from .schema import EmbeddingRecord, utcnow

logger = logging.getLogger(__name__)

_SELECT_RECORDS = ("SELECT id, subject_case_id, model_version, created_at, encryption_key_ref, "
                   "dimension, ciphertext FROM embeddings")


def _associated_data(record_id: str, case_id: str, model_version: str) -> bytes:
    return f"{record_id}|{case_id}|{model_version}".encode()


def validate_vector(vector, dimension: int) -> np.ndarray:
    """Coerce to a read-only float32 array, rejecting malformed input."""
    try:
        array = np.asarray(vector, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Vector is not numeric: {e}") from e

    if array.ndim != 1:
        raise ValidationError("Vector must be one-dimensional")
    if array.shape[0] != dimension:
        raise InvalidVectorDimension(dimension, array.shape[0])
    if not np.all(np.isfinite(array)):
        raise ValidationError("Vector contains non-finite values")
    if float(np.linalg.norm(array)) == 0.0:
        raise ValidationError("Vector has zero magnitude")

    array = array.copy()
    array.setflags(write=False)
    return array


class EmbeddingStore:
    """Encrypted persistence facade for EmbeddingRecords."""

    def __init__(self, ledger: AuditLedger, key_manager: Optional[IKeyManager] = None,
                 db_path: Optional[str] = None, dimension: Optional[int] = None):
        self.ledger = ledger
        self.key_manager = key_manager or LocalKeyManager()
        self.db_path = db_path
        self.dimension = dimension or config.EMBEDDING_DIM
        init_db(db_path)

    def submit(self, subject_case_id: str, vector, model_version: str) -> EmbeddingRecord:
        """Validate, encrypt and durably persist a new embedding."""
        if not subject_case_id or not subject_case_id.strip():
            raise ValidationError("subject_case_id cannot be empty")
        if not model_version or not model_version.strip():
            raise ValidationError("model_version cannot be empty")

        array = validate_vector(vector, self.dimension)
        record_id = str(uuid.uuid4())
        key_ref = self.key_manager.new_key_ref()
        created_at = utcnow()

        key = self.key_manager.resolve(key_ref)
        ciphertext = encrypt_vector(array, key, _associated_data(record_id, subject_case_id, model_version))

        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO embeddings (id, subject_case_id, model_version, created_at, encryption_key_ref, "
                "dimension, ciphertext) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (record_id, subject_case_id, model_version, created_at.isoformat(timespec="microseconds"),
                 key_ref, self.dimension, ciphertext)
            )
            conn.commit()

        structured_logger.log_index_operation("persisted", record_id, {
            "subject_case_id": subject_case_id,
            "model_version": model_version,
            "dimension": self.dimension
        })

        return EmbeddingRecord(
            id=record_id,
            subject_case_id=subject_case_id,
            vector=array,
            model_version=model_version,
            created_at=created_at,
            encryption_key_ref=key_ref,
        )

    def read(self, record_id: str, actor: str, reason: str) -> Optional[EmbeddingRecord]:
        """Decrypt a record for an authorized path; the read is appended to the ledger first."""
        row = self._fetch_row(record_id)
        if row is None:
            return None

        self.ledger.append(actor, "embedding.read", f"embedding:{record_id}",
                           {"reason": reason, "case_id": row[1]})
        structured_logger.log_embedding_read(record_id, actor, reason)
        return self._decrypt_row(row)

    def metadata(self, record_id: str) -> Optional[dict]:
        """Record attributes without decrypting the vector."""
        row = self._fetch_row(record_id)
        if row is None:
            return None
        return {
            "id": row[0],
            "subject_case_id": row[1],
            "model_version": row[2],
            "created_at": datetime.fromisoformat(row[3]),
            "encryption_key_ref": row[4],
        }

    def records_for_case(self, case_id: str) -> List[str]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id FROM embeddings WHERE subject_case_id = ? ORDER BY created_at DESC", (case_id,)
            ).fetchall()
        return [row[0] for row in rows]

    def superseded_by(self, case_id: str, model_version: str) -> List[str]:
        """Ids of a case's records embedded under any other model version."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id FROM embeddings WHERE subject_case_id = ? AND model_version != ?",
                (case_id, model_version)
            ).fetchall()
        return [row[0] for row in rows]

    def current_records(self, case_id: str) -> List[EmbeddingRecord]:
        """
        Records that represent a case in the index: every photo embedded under
        the model version of the case's newest record. Internal path, unaudited.
        """
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                _SELECT_RECORDS + " WHERE subject_case_id = ? AND model_version = ("
                "SELECT model_version FROM embeddings WHERE subject_case_id = ? "
                "ORDER BY created_at DESC LIMIT 1) ORDER BY created_at ASC",
                (case_id, case_id)
            ).fetchall()
        return [self._decrypt_row(row) for row in rows]

    def iter_records(self, batch_size: int = 1000) -> Iterator[EmbeddingRecord]:
        """Internal path for index (re)builds; vectors are decrypted transiently."""
        offset = 0
        while True:
            with get_db(self.db_path) as conn:
                rows = conn.execute(
                    _SELECT_RECORDS + " ORDER BY created_at ASC LIMIT ? OFFSET ?", (batch_size, offset)
                ).fetchall()
            if not rows:
                return
            for row in rows:
                yield self._decrypt_row(row)
            offset += len(rows)

    def recent(self, limit: int) -> Iterator[EmbeddingRecord]:
        """Most recently created records first; used by the degraded-mode scan."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(_SELECT_RECORDS + " ORDER BY created_at DESC LIMIT ?", (limit,)).fetchall()
        for row in rows:
            yield self._decrypt_row(row)

    def count(self) -> int:
        with get_db(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]

    def _fetch_row(self, record_id: str):
        with get_db(self.db_path) as conn:
            return conn.execute(_SELECT_RECORDS + " WHERE id = ?", (record_id,)).fetchone()

    def _decrypt_row(self, row) -> EmbeddingRecord:
        record_id, case_id, model_version, created_at, key_ref, dimension, ciphertext = row
        try:
            key = self.key_manager.resolve(key_ref)
            vector = decrypt_vector(ciphertext, key, dimension, _associated_data(record_id, case_id, model_version))
        except IntegrityFault as e:
            logger.critical(f"Decrypt failure for embedding {record_id}: {e}")
            self.ledger.latch_integrity_fault(f"decrypt failure for embedding {record_id}")
            raise

        return EmbeddingRecord(
            id=record_id,
            subject_case_id=case_id,
            vector=vector,
            model_version=model_version,
            created_at=datetime.fromisoformat(created_at),
            encryption_key_ref=key_ref,
        )
