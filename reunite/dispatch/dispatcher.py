"""
Geo-Alert Dispatcher.

Given a published case and a location, selects recipients, suppresses repeat
alerts for the same case, and hands batches of dispatch intents to the
transport with bounded concurrency, retries and backoff.
"""

import json
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Set, Tuple

from util.logging import logger as structured_logger

from ..core import config
from ..core.db import get_db, init_db
from ..core.deadline import call_with_deadline
from ..core.errors import ExternalTimeout, OperationalAlerts, TransportFailure, ValidationError
from ..core.ledger import AuditLedger
from ..core.schema import AlertMode, AlertStatus, AlertZone, Bounds, GeoPoint, utcnow
from .geo import Subscriber, SubscriberIndex
from .transport import DispatchIntent, IAlertTransport, LoggingTransport, compose_message

logger = logging.getLogger(__name__)


class CancellationToken:
    """Caller-held handle to cancel an in-progress dispatch."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class DisasterRegion:
    region_id: str
    name: str
    bounds: Bounds
    declared_at: datetime


@dataclass
class _EmissionResult:
    delivered: List[str]
    unresolved: List[str]
    cancelled: bool = False
    failed_batches: int = 0


class GeoAlertDispatcher:
    """Computes recipient sets and emits dispatch intents."""

    def __init__(self, ledger: AuditLedger, subscribers: SubscriberIndex,
                 transport: Optional[IAlertTransport] = None, db_path: Optional[str] = None,
                 fanout_cap: Optional[int] = None, suppression_window_sec: Optional[int] = None,
                 batch_size: Optional[int] = None, max_in_flight: Optional[int] = None,
                 disaster_batches_per_sec: Optional[float] = None, deadline_sec: Optional[float] = None,
                 max_attempts: Optional[int] = None, backoff_base_sec: Optional[float] = None,
                 backoff_max_sec: Optional[float] = None, alerts: Optional[OperationalAlerts] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.ledger = ledger
        self.subscribers = subscribers
        self.transport = transport or LoggingTransport()
        self.db_path = db_path
        self.fanout_cap = fanout_cap or config.ALERT_FANOUT_CAP
        self.suppression_window_sec = (suppression_window_sec if suppression_window_sec is not None
                                       else config.ALERT_SUPPRESSION_WINDOW_SEC)
        self.batch_size = batch_size or config.ALERT_BATCH_SIZE
        self.max_in_flight = max_in_flight or config.ALERT_MAX_IN_FLIGHT
        self.disaster_batches_per_sec = disaster_batches_per_sec or config.DISASTER_BATCHES_PER_SEC
        self.deadline_sec = deadline_sec or config.TRANSPORT_DEADLINE_SEC
        self.max_attempts = max_attempts or config.TRANSPORT_MAX_ATTEMPTS
        self.backoff_base_sec = backoff_base_sec if backoff_base_sec is not None else config.TRANSPORT_BACKOFF_BASE_SEC
        self.backoff_max_sec = backoff_max_sec if backoff_max_sec is not None else config.TRANSPORT_BACKOFF_MAX_SEC
        self.alerts = alerts or OperationalAlerts()
        self._sleep = sleep
        init_db(db_path)

    # ----------------------------------------------------------- regions

    def declare_region(self, region_id: str, name: str, bounds: Bounds) -> DisasterRegion:
        """Declare a disaster region that broadcast mode expands to."""
        min_lat, min_lon, max_lat, max_lon = bounds
        if not region_id:
            raise ValidationError("region_id cannot be empty")
        if min_lat >= max_lat or min_lon >= max_lon:
            raise ValidationError("Region bounds must have min < max")

        declared_at = utcnow()
        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO disaster_regions (region_id, name, min_lat, min_lon, max_lat, max_lon, "
                "declared_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (region_id, name, min_lat, min_lon, max_lat, max_lon, declared_at.isoformat())
            )
            conn.commit()
        self.ledger.append("dispatcher", "alert.region_declared", f"region:{region_id}",
                           {"name": name, "bounds": list(bounds)})
        return DisasterRegion(region_id, name, tuple(bounds), declared_at)

    def list_regions(self) -> List[DisasterRegion]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT region_id, name, min_lat, min_lon, max_lat, max_lon, declared_at FROM disaster_regions "
                "ORDER BY declared_at DESC"
            ).fetchall()
        return [DisasterRegion(r[0], r[1], (r[2], r[3], r[4], r[5]), datetime.fromisoformat(r[6])) for r in rows]

    def region_for(self, center: GeoPoint) -> Optional[DisasterRegion]:
        """Most recently declared region containing the point."""
        for region in self.list_regions():
            min_lat, min_lon, max_lat, max_lon = region.bounds
            if min_lat <= center.lat <= max_lat and min_lon <= center.lon <= max_lon:
                return region
        return None

    # ---------------------------------------------------------- dispatch

    def dispatch(self, case_id: str, center: GeoPoint, radius_m: float, mode: AlertMode = AlertMode.STANDARD,
                 cancel_token: Optional[CancellationToken] = None) -> AlertZone:
        """Compute the recipient set for a zone and emit alerts; returns the terminal AlertZone."""
        if not case_id:
            raise ValidationError("case_id cannot be empty")
        if mode == AlertMode.STANDARD and (radius_m is None or radius_m <= 0):
            raise ValidationError("radius must be positive in standard mode")

        zone = AlertZone(
            zone_id=str(uuid.uuid4()),
            case_id=case_id,
            center=center,
            radius_meters=radius_m or 0.0,
            mode=mode,
        )

        if mode == AlertMode.DISASTER_BROADCAST:
            region = self.region_for(center)
            if region is None:
                raise ValidationError("No declared disaster region contains the alert center")
            zone.region_id = region.region_id
            candidates = self.subscribers.within_box(region.bounds, center)
        else:
            candidates = self.subscribers.within_radius(center, radius_m)

        self._persist_zone(zone, insert=True)
        self.ledger.append("dispatcher", "alert.zone_created", f"alert_zone:{zone.zone_id}", {
            "case_id": case_id,
            "mode": mode.value,
            "radius_m": zone.radius_meters,
            "region_id": zone.region_id,
            "geometric_recipients": len(candidates),
        })

        suppressed = self._suppressed(case_id, [s.subscriber_id for s, _ in candidates])
        eligible = [s for s, _ in candidates if s.subscriber_id not in suppressed]
        if mode == AlertMode.STANDARD:
            # Nearest first; the remainder is untouched this cycle
            selected = eligible[:self.fanout_cap]
        else:
            selected = eligible

        structured_logger.log_dispatch(zone.zone_id, case_id, "selected", {
            "mode": mode.value,
            "geometric": len(candidates),
            "suppressed": len(suppressed),
            "selected": len(selected),
        })

        intents = [self._intent(zone, s) for s in selected]
        result = _EmissionResult(delivered=[], unresolved=[])
        try:
            self._emit(zone, intents, cancel_token, result)
        finally:
            # The zone always reaches a terminal status and delivered recipients are always recorded
            self._finalize(zone, intents, result)
        return zone

    def _finalize(self, zone: AlertZone, intents: List[DispatchIntent], result: _EmissionResult):
        resolved = set(result.delivered).union(result.unresolved)
        leftover = [intent.subscriber_id for intent in intents if intent.subscriber_id not in resolved]
        if leftover:
            logger.error(f"Alert zone {zone.zone_id}: emission aborted with {len(leftover)} recipients unresolved")
            result.unresolved.extend(leftover)

        case_id = zone.case_id
        self._record_suppression(case_id, result.delivered)

        zone.recipient_count = len(result.delivered)
        zone.dispatched_at = utcnow()
        zone.unresolved_recipients = result.unresolved
        if result.cancelled:
            zone.status = AlertStatus.CANCELLED
        elif result.unresolved:
            zone.status = AlertStatus.PARTIALLY_DISPATCHED
            self.alerts.escalate("transport_failure",
                                 f"Alert zone {zone.zone_id} partially dispatched",
                                 {"case_id": case_id, "unresolved": len(result.unresolved),
                                  "failed_batches": result.failed_batches})
        else:
            zone.status = AlertStatus.DISPATCHED

        self._persist_zone(zone)
        self.ledger.append("dispatcher", "alert.dispatched", f"alert_zone:{zone.zone_id}", {
            "case_id": case_id,
            "status": zone.status.value,
            "recipient_count": zone.recipient_count,
            "unresolved_count": len(zone.unresolved_recipients),
        })
        structured_logger.log_dispatch(zone.zone_id, case_id, zone.status.value, {
            "recipient_count": zone.recipient_count,
            "unresolved": len(zone.unresolved_recipients),
        })

    def _intent(self, zone: AlertZone, subscriber: Subscriber) -> DispatchIntent:
        message, compact = compose_message(zone.case_id, subscriber.channel, subscriber.low_bandwidth,
                                           zone.mode == AlertMode.DISASTER_BROADCAST)
        return DispatchIntent(zone.zone_id, zone.case_id, subscriber.subscriber_id,
                              subscriber.channel, message, compact)

    # ---------------------------------------------------------- emission

    def _emit(self, zone: AlertZone, intents: List[DispatchIntent],
              cancel_token: Optional[CancellationToken], result: _EmissionResult) -> _EmissionResult:
        batches = [intents[i:i + self.batch_size] for i in range(0, len(intents), self.batch_size)]
        if not batches:
            return result

        rate_limited = zone.mode == AlertMode.DISASTER_BROADCAST
        min_interval = 1.0 / self.disaster_batches_per_sec if rate_limited else 0.0
        slots = threading.BoundedSemaphore(self.max_in_flight)
        lock = threading.Lock()
        futures = []
        last_submit = None

        def run(batch: List[DispatchIntent]):
            try:
                try:
                    ok = self._deliver_with_retry(batch, cancel_token)
                except Exception as e:
                    logger.error(f"Unexpected transport error for {len(batch)} intents of zone {zone.zone_id}: {e}")
                    ok = False
                ids = [intent.subscriber_id for intent in batch]
                with lock:
                    if ok:
                        result.delivered.extend(ids)
                    else:
                        result.unresolved.extend(ids)
                        result.failed_batches += 1
            finally:
                slots.release()

        with ThreadPoolExecutor(max_workers=self.max_in_flight, thread_name_prefix="alert-emit") as pool:
            for index, batch in enumerate(batches):
                # Admission control: wait for a free in-flight slot rather than dropping
                slots.acquire()
                if cancel_token is not None and cancel_token.cancelled:
                    slots.release()
                    with lock:
                        result.cancelled = True
                        for remaining in batches[index:]:
                            result.unresolved.extend(intent.subscriber_id for intent in remaining)
                    break

                if rate_limited and last_submit is not None:
                    wait = min_interval - (time.monotonic() - last_submit)
                    if wait > 0:
                        self._sleep(wait)
                last_submit = time.monotonic()
                futures.append(pool.submit(run, batch))

            for future in futures:
                future.result()

        return result

    def _deliver_with_retry(self, batch: List[DispatchIntent], cancel_token: Optional[CancellationToken]) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1 and cancel_token is not None and cancel_token.cancelled:
                return False
            try:
                call_with_deadline(self.transport.deliver, self.deadline_sec, batch, self.deadline_sec)
                return True
            except (TransportFailure, ExternalTimeout) as e:
                logger.warning(f"Transport attempt {attempt}/{self.max_attempts} failed for "
                               f"{len(batch)} intents: {e}")
                if attempt < self.max_attempts:
                    self._sleep(self.backoff_delay(attempt))
        return False

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff before retry number attempt + 1."""
        return min(self.backoff_max_sec, self.backoff_base_sec * (2 ** (attempt - 1)))

    # ------------------------------------------------------- persistence

    def _suppressed(self, case_id: str, subscriber_ids: List[str]) -> Set[str]:
        if not subscriber_ids:
            return set()
        cutoff = (utcnow() - timedelta(seconds=self.suppression_window_sec)).isoformat(timespec="microseconds")
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT subscriber_id FROM alert_suppression WHERE case_id = ? AND last_alerted_at >= ?",
                (case_id, cutoff)
            ).fetchall()
        recent = {row[0] for row in rows}
        return recent.intersection(subscriber_ids)

    def _record_suppression(self, case_id: str, subscriber_ids: List[str]):
        if not subscriber_ids:
            return
        now = utcnow().isoformat(timespec="microseconds")
        with get_db(self.db_path) as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO alert_suppression (subscriber_id, case_id, last_alerted_at) VALUES (?, ?, ?)",
                [(sid, case_id, now) for sid in subscriber_ids]
            )
            conn.commit()

    def _persist_zone(self, zone: AlertZone, insert: bool = False):
        values = (zone.case_id, zone.center.lat, zone.center.lon, zone.radius_meters, zone.mode.value,
                  zone.region_id, zone.status.value, zone.recipient_count,
                  json.dumps(zone.unresolved_recipients),
                  zone.dispatched_at.isoformat() if zone.dispatched_at else None, zone.zone_id)
        with get_db(self.db_path) as conn:
            if insert:
                conn.execute(
                    "INSERT INTO alert_zones (case_id, center_lat, center_lon, radius_meters, mode, region_id, "
                    "status, recipient_count, unresolved, dispatched_at, zone_id) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)", values
                )
            else:
                conn.execute(
                    "UPDATE alert_zones SET case_id = ?, center_lat = ?, center_lon = ?, radius_meters = ?, "
                    "mode = ?, region_id = ?, status = ?, recipient_count = ?, unresolved = ?, "
                    "dispatched_at = ? WHERE zone_id = ?", values
                )
            conn.commit()

    def get_zone(self, zone_id: str) -> Optional[AlertZone]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT zone_id, case_id, center_lat, center_lon, radius_meters, mode, region_id, status, "
                "recipient_count, unresolved, dispatched_at FROM alert_zones WHERE zone_id = ?", (zone_id,)
            ).fetchone()
        if not row:
            return None
        return AlertZone(
            zone_id=row[0],
            case_id=row[1],
            center=GeoPoint(row[2], row[3]),
            radius_meters=row[4],
            mode=AlertMode(row[5]),
            region_id=row[6],
            status=AlertStatus(row[7]),
            recipient_count=row[8],
            unresolved_recipients=json.loads(row[9]),
            dispatched_at=datetime.fromisoformat(row[10]) if row[10] else None,
        )
