"""Structured logging for store operations."""

import logging
from typing import Any

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


class StructuredStoreLogger:
    """Structured logger for document store operations."""

    def log_operation(
        self,
        target: str,
        verb: str,
        outcome: str,
        latency_ms: float,
        tenant_id: str | None = None,
        error_reason: str | None = None,
    ) -> None:
        """Log one store verb invocation with structured data."""
        log_data: dict[str, Any] = {
            "target": target,
            "verb": verb,
            "outcome": outcome,
            "latency_ms": round(latency_ms, 2),
            "tenant_id": tenant_id,
        }

        if error_reason:
            log_data["error_reason"] = error_reason

        log_msg = f"Store operation: {verb} on {target} - {outcome}"

        if outcome == "success":
            logger.debug(log_msg, extra={"structured": log_data})
        else:
            logger.warning(log_msg, extra={"structured": log_data})
