"""
Append-only, hash-chained audit ledger.

Each event's hash covers its own fields plus the previous event's hash, so any
edit, deletion or reordering shows up as a break when the chain is recomputed.
Appends are serialized by a single writer lock; readers use their own
connections and never block on it. Checkpoints bound replay after restart.
"""

import hashlib
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from util.logging import logger as structured_logger

from . import config
from .db import get_db, init_db
from .errors import IntegrityFault, OperationalAlerts
from .schema import AuditEvent, ChainVerification, utcnow

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


def compute_event_hash(event_id: int, actor: str, action: str, resource_ref: str,
                       timestamp: str, payload: Dict[str, Any], prior_event_hash: str) -> str:
    """SHA-256 over the canonical JSON form of an event."""
    canonical = json.dumps(
        {
            "event_id": event_id,
            "actor": actor,
            "action": action,
            "resource_ref": resource_ref,
            "timestamp": timestamp,
            "payload": payload,
            "prior_event_hash": prior_event_hash,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


def _row_to_event(row: Tuple) -> AuditEvent:
    event_id, actor, action, resource_ref, timestamp, payload, prior_hash, event_hash = row
    return AuditEvent(
        event_id=event_id,
        actor=actor,
        action=action,
        resource_ref=resource_ref,
        timestamp=datetime.fromisoformat(timestamp),
        prior_event_hash=prior_hash,
        event_hash=event_hash,
        payload=json.loads(payload),
    )


_SELECT_EVENTS = ("SELECT event_id, actor, action, resource_ref, timestamp, payload, "
                  "prior_event_hash, event_hash FROM audit_ledger")


class AuditLedger:
    """Tamper-evident record of every gate decision and dispatch action."""

    def __init__(self, db_path: Optional[str] = None, checkpoint_interval: Optional[int] = None,
                 alerts: Optional[OperationalAlerts] = None):
        self.db_path = db_path
        self.checkpoint_interval = checkpoint_interval if checkpoint_interval is not None else config.LEDGER_CHECKPOINT_INTERVAL
        self.alerts = alerts or OperationalAlerts()
        self._write_lock = threading.Lock()
        self._head_id = 0
        self._head_hash = GENESIS_HASH
        self._integrity_fault: Optional[str] = None

        init_db(db_path)
        self.recover()

    # ------------------------------------------------------------------ writes

    def append(self, actor: str, action: str, resource_ref: str,
               payload: Optional[Dict[str, Any]] = None) -> AuditEvent:
        """Durably append an event and return it once committed."""
        if not actor or not action or not resource_ref:
            raise ValueError("actor, action and resource_ref are required")

        payload = payload or {}
        with self._write_lock:
            event_id = self._head_id + 1
            timestamp = utcnow().isoformat(timespec="microseconds")
            event_hash = compute_event_hash(event_id, actor, action, resource_ref,
                                            timestamp, payload, self._head_hash)

            with get_db(self.db_path) as conn:
                conn.execute(
                    "INSERT INTO audit_ledger (event_id, actor, action, resource_ref, timestamp, payload, "
                    "prior_event_hash, event_hash) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (event_id, actor, action, resource_ref, timestamp,
                     json.dumps(payload, sort_keys=True, default=str), self._head_hash, event_hash)
                )
                conn.commit()

            event = AuditEvent(
                event_id=event_id,
                actor=actor,
                action=action,
                resource_ref=resource_ref,
                timestamp=datetime.fromisoformat(timestamp),
                prior_event_hash=self._head_hash,
                event_hash=event_hash,
                payload=payload,
            )
            self._head_id = event_id
            self._head_hash = event_hash

            if self.checkpoint_interval and event_id % self.checkpoint_interval == 0:
                self._write_checkpoint(event_id, event_hash)

        structured_logger.log_ledger_append(event_id, action, resource_ref)
        return event

    def checkpoint(self) -> Optional[int]:
        """Snapshot the current head so restarts replay only what follows it."""
        with self._write_lock:
            if self._head_id == 0:
                return None
            self._write_checkpoint(self._head_id, self._head_hash)
            return self._head_id

    def _write_checkpoint(self, event_id: int, event_hash: str):
        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO audit_checkpoints (last_event_id, last_event_hash, created_at) VALUES (?, ?, ?)",
                (event_id, event_hash, utcnow().isoformat())
            )
            conn.commit()
        logger.info(f"Audit ledger checkpoint written at event {event_id}")

    # ---------------------------------------------------------------- recovery

    def recover(self):
        """Restore the chain head from the latest checkpoint plus replay."""
        with self._write_lock:
            anchor_id, anchor_hash = 0, GENESIS_HASH
            checkpoint = self._latest_checkpoint()
            if checkpoint:
                cp_id, cp_hash = checkpoint
                stored = self._stored_hash(cp_id)
                if stored != cp_hash:
                    self._latch(f"checkpoint at event {cp_id} does not match ledger", cp_id)
                    self._head_id, self._head_hash = self._last_row()
                    return
                anchor_id, anchor_hash = cp_id, cp_hash

            verification, head_id, head_hash = self._walk(anchor_id + 1, None, anchor_id, anchor_hash)
            if not verification.valid:
                self._latch(f"chain broken during replay at event {verification.broken_at}",
                            verification.broken_at)
                self._head_id, self._head_hash = self._last_row()
                return

            self._head_id, self._head_hash = head_id, head_hash
            logger.info(f"Audit ledger recovered: head={head_id}, replayed={verification.checked}")

    def _latest_checkpoint(self) -> Optional[Tuple[int, str]]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT last_event_id, last_event_hash FROM audit_checkpoints ORDER BY checkpoint_id DESC LIMIT 1"
            ).fetchone()
        return (row[0], row[1]) if row else None

    def _stored_hash(self, event_id: int) -> Optional[str]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT event_hash FROM audit_ledger WHERE event_id = ?", (event_id,)).fetchone()
        return row[0] if row else None

    def _last_row(self) -> Tuple[int, str]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT event_id, event_hash FROM audit_ledger ORDER BY event_id DESC LIMIT 1"
            ).fetchone()
        return (row[0], row[1]) if row else (0, GENESIS_HASH)

    # ------------------------------------------------------------ verification

    def verify_chain(self, start_id: Optional[int] = None, end_id: Optional[int] = None) -> ChainVerification:
        """
        Recompute the hash chain over [start_id, end_id].

        The event preceding start_id anchors the range. A broken link latches
        the integrity fault and is escalated to operators.
        """
        start_id = max(1, start_id or 1)
        if start_id == 1:
            anchor_id, anchor_hash = 0, GENESIS_HASH
        else:
            anchor_id = start_id - 1
            anchor_hash = self._stored_hash(anchor_id)
            if anchor_hash is None:
                result = ChainVerification.broken(anchor_id, 0)
                self._latch(f"anchor event {anchor_id} missing", anchor_id)
                return result

        result, _, _ = self._walk(start_id, end_id, anchor_id, anchor_hash)
        if not result.valid:
            self._latch(f"chain broken at event {result.broken_at}", result.broken_at)
        return result

    def _walk(self, start_id: int, end_id: Optional[int], anchor_id: int,
              anchor_hash: str) -> Tuple[ChainVerification, int, str]:
        query = _SELECT_EVENTS + " WHERE event_id >= ?"
        params: List[Any] = [start_id]
        if end_id is not None:
            query += " AND event_id <= ?"
            params.append(end_id)
        query += " ORDER BY event_id ASC"

        expected_id = anchor_id + 1
        prior_hash = anchor_hash
        checked = 0
        with get_db(self.db_path) as conn:
            for row in conn.execute(query, params):
                event_id, actor, action, resource_ref, timestamp, payload, stored_prior, stored_hash = row
                if event_id != expected_id:
                    return ChainVerification.broken(expected_id, checked), expected_id - 1, prior_hash
                if stored_prior != prior_hash:
                    return ChainVerification.broken(event_id, checked), expected_id - 1, prior_hash
                try:
                    payload_obj = json.loads(payload)
                except json.JSONDecodeError:
                    return ChainVerification.broken(event_id, checked), expected_id - 1, prior_hash
                recomputed = compute_event_hash(event_id, actor, action, resource_ref,
                                                timestamp, payload_obj, prior_hash)
                if recomputed != stored_hash:
                    return ChainVerification.broken(event_id, checked), expected_id - 1, prior_hash
                prior_hash = recomputed
                expected_id += 1
                checked += 1

        return ChainVerification.ok(checked), expected_id - 1, prior_hash

    # ---------------------------------------------------------- integrity latch

    @property
    def integrity_fault(self) -> Optional[str]:
        return self._integrity_fault

    def raise_if_halted(self):
        if self._integrity_fault:
            raise IntegrityFault(self._integrity_fault)

    def latch_integrity_fault(self, reason: str):
        """Halt disclosures after an integrity fault detected elsewhere (e.g. decrypt failure)."""
        self._latch(reason, None)

    def _latch(self, reason: str, event_id: Optional[int]):
        first = self._integrity_fault is None
        self._integrity_fault = reason
        structured_logger.log_integrity_fault("audit_ledger", {"reason": reason, "event_id": event_id})
        if first:
            self.alerts.escalate("integrity_fault", reason, {"event_id": event_id})

    def clear_integrity_fault(self, operator: str, note: str = "") -> AuditEvent:
        """Manual clearance after investigation; the clearance is itself audited."""
        if not operator:
            raise ValueError("operator is required to clear an integrity fault")
        previous = self._integrity_fault
        self._integrity_fault = None
        return self.append(operator, "integrity.cleared", "ledger",
                           {"previous_fault": previous or "", "note": note})

    # ------------------------------------------------------------------- reads

    def head(self) -> Tuple[int, str]:
        return self._head_id, self._head_hash

    def events(self, start_id: int = 1, end_id: Optional[int] = None) -> List[AuditEvent]:
        query = _SELECT_EVENTS + " WHERE event_id >= ?"
        params: List[Any] = [start_id]
        if end_id is not None:
            query += " AND event_id <= ?"
            params.append(end_id)
        query += " ORDER BY event_id ASC"
        with get_db(self.db_path) as conn:
            return [_row_to_event(row) for row in conn.execute(query, params)]

    def export_range(self, from_ts: datetime, to_ts: datetime) -> List[AuditEvent]:
        """Read-only export of events whose timestamp lies in [from_ts, to_ts]."""
        if from_ts > to_ts:
            raise ValueError("from_ts must not be after to_ts")
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                _SELECT_EVENTS + " WHERE timestamp >= ? AND timestamp <= ? ORDER BY event_id ASC",
                (_as_utc_iso(from_ts), _as_utc_iso(to_ts))
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def events_for_resource(self, resource_ref: str) -> List[AuditEvent]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                _SELECT_EVENTS + " WHERE resource_ref = ? ORDER BY event_id ASC", (resource_ref,)
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def count(self) -> int:
        with get_db(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM audit_ledger").fetchone()[0]


def _as_utc_iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")
