"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = "smartz-gateway"


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_purchase(
    request_id: str,
    account_id: str,
    order_id: Optional[str],
    outcome: str,
    coins: int,
    duration_ms: float,
) -> None:
    """Log structured purchase outcome for analysis"""
    logging.info(
        "Purchase completed",
        extra={
            "request_id": request_id,
            "account_id": account_id,
            "order_id": order_id,
            "step": "purchase_complete",
            "purchase_outcome": outcome,
            "coins": coins,
            "duration_ms": duration_ms,
        },
    )


def log_payment(
    request_id: str,
    account_id: str,
    reference: str,
    outcome: str,
    coins: int,
    duration_ms: float,
) -> None:
    """Log structured payment credit outcome"""
    logging.info(
        "Payment processed",
        extra={
            "request_id": request_id,
            "account_id": account_id,
            "payment_reference": reference,
            "step": "payment_complete",
            "payment_outcome": outcome,
            "coins": coins,
            "duration_ms": duration_ms,
        },
    )
