"""
Structured operation logging for the record store, the oracle and the API.
Ciphertext tokens and cleartexts never reach the log verbatim.
"""

import logging
from typing import Any, Dict, List

DEFAULT_SENSITIVE_FIELDS = ['value', 'flag', 'cleartexts', 'proof', 'ciphertext', 'token',
                            'encrypted_value', 'encrypted_flag', 'encrypted_delta', 'encrypted_total']


class StructuredLogger:
    """Structured logger for record lifecycle, oracle and campaign operations."""

    def __init__(self, name: str = "loyalty_vault"):
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

        if status in ("rejected", "failed"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_record_created(self, record_id: int, created_at: str):
        """Log confidential record creation."""
        self.log_operation("record.created", "success", {"record_id": record_id, "created_at": created_at})

    def log_decryption_requested(self, record_id: int, request_id: str):
        """Log a decryption request handed to the oracle."""
        self.log_operation("decryption.requested", "pending", {"record_id": record_id, "request_id": request_id})

    def log_decryption_resolved(self, record_id: int, request_id: str):
        """Log a successful oracle resolution. Plaintext is never logged."""
        self.log_operation("decryption.resolved", "success", {"record_id": record_id, "request_id": request_id})

    def log_decryption_failed(self, record_id: int, request_id: str, reason: str):
        """Log a request the oracle could not decrypt."""
        self.log_operation("decryption.failed", "failed",
                           {"record_id": record_id, "request_id": request_id, "reason": reason})

    def log_record_closed(self, record_id: int, status: str, brand: str):
        """Log a record leaving the active state (redeemed or expired)."""
        self.log_operation(f"record.{status}", "success", {"record_id": record_id, "brand": brand})

    def log_operation_rejected(self, operation: str, error_type: str, identifiers: Dict[str, Any] = None):
        """Log an operation rejected with one of the store's error kinds."""
        log_details = {"error_type": error_type}
        if identifiers:
            log_details.update(sanitize_payload(identifiers))

        self.log_operation(operation, "rejected", log_details)

    def log_requests_expired(self, request_ids: List[str], ttl_sec: int):
        """Log maintenance expiry of stale decryption requests."""
        self.log_operation("decryption.expired", "success", {
            "count": len(request_ids),
            "ttl_sec": ttl_sec,
            "request_ids": request_ids[:10]
        })

    def log_campaign_accumulated(self, campaign_name: str, contributions: int, registered: bool):
        """Log a confidential campaign accumulation."""
        self.log_operation("campaign.accumulated", "success", {
            "campaign": campaign_name,
            "contributions": contributions,
            "registered": registered
        })

    def log_oracle_fulfilment(self, request_id: str, start_time: float, end_time: float,
                              status: str = "success", details: Dict[str, Any] = None):
        """Log oracle fulfilment of one request."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"request_id": request_id, "duration_ms": duration_ms}
        if details:
            log_details.update(details)

        self.log_operation("oracle.fulfil", status, log_details)

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

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Redact confidential fields before they reach the log."""
    if sensitive_fields is None:
        sensitive_fields = DEFAULT_SENSITIVE_FIELDS

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
