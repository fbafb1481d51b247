"""
Geo-alert dispatch package.
"""

from .dispatcher import GeoAlertDispatcher, CancellationToken, DisasterRegion
from .geo import Subscriber, SubscriberIndex, haversine_m, bounding_box
from .transport import DispatchIntent, IAlertTransport, LoggingTransport, WebhookTransport, get_transport

__all__ = [
    'GeoAlertDispatcher',
    'CancellationToken',
    'DisasterRegion',
    'Subscriber',
    'SubscriberIndex',
    'haversine_m',
    'bounding_box',
    'DispatchIntent',
    'IAlertTransport',
    'LoggingTransport',
    'WebhookTransport',
    'get_transport',
]
