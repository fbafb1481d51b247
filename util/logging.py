"""
Structured logging for engine operations.
Index, gate, dispatch and ledger activity is logged as operation/status/details lines.
"""

import logging
from typing import Any, Dict, List

# Never written to logs verbatim
BIOMETRIC_FIELDS = ['vector', 'embedding', 'query_vector', 'ciphertext', 'key', 'secret', 'password']


class StructuredLogger:
    """Structured logger for engine operations."""

    def __init__(self, name: str = "reunite"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {sanitize_payload(details)}"

        self.logger.log(level, message)

    def log_index_operation(self, operation: str, record_id: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log a similarity index operation."""
        log_details = {"record_id": record_id}
        if details:
            log_details.update(details)

        self.log_operation(f"index.{operation}", status, log_details)

    def log_embedding_read(self, record_id: str, actor: str, reason: str):
        """Log a read of a stored embedding outside similarity computation."""
        self.log_operation("embedding.read", "logged", {
            "record_id": record_id,
            "actor": actor,
            "reason": reason[:100] if reason else ""
        })

    def log_gate_decision(self, requester_id: str, role: str, resource_ref: str, decision: str, reason: str):
        """Log a privacy gate decision."""
        log_details = {
            "requester_id": requester_id,
            "role": role,
            "resource_ref": resource_ref,
            "reason": reason
        }
        self.log_operation("gate.decision", decision, log_details)

    def log_ledger_append(self, event_id: int, action: str, resource_ref: str):
        """Log an audit ledger append."""
        self.log_operation("ledger.append", "committed", {
            "event_id": event_id,
            "action": action,
            "resource_ref": resource_ref
        })

    def log_integrity_fault(self, source: str, details: Dict[str, Any] = None):
        """Log a fatal integrity fault."""
        log_details = {"source": source}
        if details:
            log_details.update(details)

        self.log_operation("integrity.fault", "halted", log_details, level=logging.CRITICAL)

    def log_dispatch(self, zone_id: str, case_id: str, status: str, details: Dict[str, Any] = None):
        """Log alert dispatch progress."""
        log_details = {"zone_id": zone_id, "case_id": case_id}
        if details:
            log_details.update(details)

        self.log_operation("dispatch", status, log_details)

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log heartbeat task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)

        self.log_operation(f"heartbeat.{task_name}", status, log_details)

    def log_validation_error(self, operation: str, errors: List[Any]):
        """Log input validation errors with sanitized details."""
        sanitized_errors = [str(error)[:100] for error in errors]
        self.log_operation(f"{operation}.validation", "rejected", {
            "errors": sanitized_errors,
            "error_count": len(sanitized_errors)
        })


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging with privacy controls."""
    if sensitive_fields is None:
        sensitive_fields = BIOMETRIC_FIELDS

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for logging; biometric fields are always redacted."""
    if sensitive_fields is None:
        sensitive_fields = BIOMETRIC_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if k in BIOMETRIC_FIELDS or (not reveal_sensitive and k in sensitive_fields):
                sanitized[k] = "[REDACTED]"
            else:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        if len(payload) > 20:
            return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload[:20]] + [f"... {len(payload) - 20} more"]
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
