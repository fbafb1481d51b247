"""
Error taxonomy.

Validation and access-policy outcomes go back to the immediate caller.
Integrity faults and exhausted transport retries are also escalated through
the operational alert path.
"""

import logging
from collections import deque
from typing import Any, Deque, Dict, Optional

from .schema import ReasonCategory

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Base exception for engine errors."""
    pass


class ValidationError(EngineError):
    """Malformed input, rejected synchronously."""
    pass


class InvalidVectorDimension(ValidationError):
    """Raised when a submitted vector does not have the configured dimension."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Vector dimension {actual} does not match expected dimension {expected}")


class IndexUnavailable(EngineError):
    """Transient; callers fall back to the bounded linear scan."""
    pass


class AccessDenied(EngineError):
    """A policy outcome, not a system fault."""

    def __init__(self, reason: ReasonCategory, resource_ref: str = ""):
        self.reason = reason
        self.resource_ref = resource_ref
        super().__init__(reason.message)


class IntegrityFault(EngineError):
    """Audit chain break or decrypt failure. Disclosures halt until cleared."""
    pass


class TransportFailure(EngineError):
    """Downstream alert transport could not accept a batch."""
    pass


class ExternalTimeout(EngineError):
    """An external collaborator call exceeded its deadline; retryable."""
    pass


class OperationCancelled(EngineError):
    """The caller cancelled the operation before completion."""
    pass


class OperationalAlerts:
    """
    Escalation path to operators.

    The default implementation logs; deployments subclass it to page on-call.
    """

    def __init__(self, max_retained: int = 1000):
        # Most recent escalations only; older ones remain in the log
        self.raised: Deque[Dict[str, Any]] = deque(maxlen=max_retained)

    def escalate(self, kind: str, message: str, details: Optional[Dict[str, Any]] = None):
        record = {"kind": kind, "message": message, "details": details or {}}
        self.raised.append(record)
        logger.critical(f"Operational alert [{kind}]: {message} {details or {}}")
