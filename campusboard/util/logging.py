"""
Board operations logging - structured, single-line records for store activity.
Every store transition, optimistic write, echo decision and rollback goes through here.
"""

import logging
from typing import Any, Dict, List

SENSITIVE_FIELDS = ['password', 'secret', 'token', 'access_token', 'refresh_token', 'anon_key', 'email']


class StructuredLogger:
    """Structured logger for realtime board operations."""

    def __init__(self, name: str = "campusboard"):
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

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.info(message)

    def log_state_transition(self, table: str, previous: str, current: str):
        """Log a store lifecycle transition."""
        self.log_operation("store.transition", current, {"table": table, "from": previous})

    def log_seed(self, table: str, fetched: int, visible: int, status: str = "success"):
        """Log a (re)seed of a board."""
        self.log_operation("store.seed", status, {
            "table": table,
            "fetched": fetched,
            "visible": visible
        })

    def log_remote_event(self, table: str, kind: str, entity_id: Any, decision: str):
        """Log how an inbound change feed event was handled."""
        self.log_operation("feed.event", decision, {
            "table": table,
            "kind": kind,
            "entity_id": entity_id
        })

    def log_optimistic(self, table: str, mutation_id: str, kind: str, entity_id: Any, fields: Dict[str, Any] = None):
        """Log a locally applied optimistic mutation."""
        details = {
            "table": table,
            "mutation_id": mutation_id,
            "kind": kind,
            "entity_id": entity_id
        }
        if fields:
            details["fields"] = sanitize_payload(fields)

        self.log_operation("optimistic.applied", "pending", details)

    def log_mutation_outcome(self, table: str, mutation_id: str, status: str, reason: str = ""):
        """Log the remote outcome of an optimistic mutation."""
        details = {"table": table, "mutation_id": mutation_id}
        if reason:
            details["reason"] = reason[:100]

        self.log_operation("optimistic.outcome", status, details)

    def log_rollback(self, table: str, mutation_id: str, entity_id: Any, status: str = "reverted"):
        """Log a rollback attempt."""
        self.log_operation("optimistic.rollback", status, {
            "table": table,
            "mutation_id": mutation_id,
            "entity_id": entity_id
        })

    def log_echo_expired(self, table: str, mutation_ids: List[str]):
        """Log mutations whose echo never arrived inside the echo window."""
        self.log_operation("optimistic.echo_timeout", "assumed_applied", {
            "table": table,
            "mutation_ids": mutation_ids,
            "count": len(mutation_ids)
        })

    def log_visibility_drift(self, table: str, entity_id: Any, role: str = None):
        """Log an entity removed because the actor can no longer see it."""
        self.log_operation("visibility.drift", "removed", {
            "table": table,
            "entity_id": entity_id,
            "role": role
        })

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging with payload redaction."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    # Determine operation type from event_type
    if event_type.startswith("auth"):
        operation = "auth"
    elif event_type.startswith("action"):
        operation = "action"
    elif event_type.startswith("feed"):
        operation = "feed"
    else:
        operation = event_type.replace(".", "_")

    logger.log_operation(operation, "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
