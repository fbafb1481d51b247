"""
Alert transport boundary.

The engine decides who receives what; delivery over push/SMS/kiosk belongs to
an external transport. LoggingTransport is the stub used when no transport is
configured, as in development.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

import requests

from ..core import config
from ..core.errors import ExternalTimeout, TransportFailure

logger = logging.getLogger(__name__)

COMPACT_CHANNELS = ("sms", "kiosk")


@dataclass(frozen=True)
class DispatchIntent:
    """A decision that one subscriber should be alerted about one case."""
    zone_id: str
    case_id: str
    subscriber_id: str
    channel: str
    message: str
    compact: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)


def compose_message(case_id: str, channel: str, low_bandwidth: bool, disaster: bool) -> tuple:
    """Return (message, compact); SMS, kiosks and low-bandwidth subscribers get the short form."""
    compact = low_bandwidth or channel in COMPACT_CHANNELS
    if compact:
        return f"MISSING PERSON {case_id} near you. Reply INFO for details.", True
    prefix = "Emergency area alert" if disaster else "Missing person alert"
    return f"{prefix}: case {case_id} was last seen near you. Open the app to view the published case.", False


class IAlertTransport(ABC):
    """Abstract interface for alert delivery."""

    @abstractmethod
    def deliver(self, batch: List[DispatchIntent], deadline_sec: float) -> None:
        """Hand a batch to the transport; raise TransportFailure or ExternalTimeout on failure."""
        pass


class LoggingTransport(IAlertTransport):
    """Stub transport: records intents instead of sending them."""

    def __init__(self):
        self.delivered: List[DispatchIntent] = []
        self._lock = threading.Lock()

    def deliver(self, batch: List[DispatchIntent], deadline_sec: float) -> None:
        with self._lock:
            self.delivered.extend(batch)
        logger.info(f"[STUB] Delivered batch of {len(batch)} alert intents "
                    f"(zone {batch[0].zone_id if batch else '-'})")


class WebhookTransport(IAlertTransport):
    """Hands batches to a push/SMS gateway over HTTP."""

    def __init__(self, url: Optional[str] = None, session: Optional[requests.Session] = None):
        self.url = url or config.TRANSPORT_WEBHOOK_URL
        if not self.url:
            raise ValueError("WebhookTransport requires a URL")
        self.session = session or requests.Session()

    def deliver(self, batch: List[DispatchIntent], deadline_sec: float) -> None:
        try:
            response = self.session.post(
                self.url,
                json={"intents": [intent.to_dict() for intent in batch]},
                timeout=deadline_sec,
            )
        except requests.Timeout as e:
            raise ExternalTimeout(f"Transport did not respond within {deadline_sec}s") from e
        except requests.RequestException as e:
            raise TransportFailure(f"Transport unreachable: {e}") from e

        if response.status_code >= 400:
            raise TransportFailure(f"Transport rejected batch: HTTP {response.status_code}")


def get_transport() -> IAlertTransport:
    """Get configured transport implementation."""
    if config.TRANSPORT_PROVIDER == "webhook":
        return WebhookTransport()
    return LoggingTransport()
