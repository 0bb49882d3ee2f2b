"""
Structured Logging Configuration

JSON lines on stdout. Every record carries the request id (when inside a
request) and ledger records also carry the booking id and the amounts that
were involved, so a single booking can be traced across finalize, refund,
cancel and webhook handling.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from contextvars import ContextVar

request_id_var: ContextVar[str] = ContextVar('request_id', default='')

# Attributes on a LogRecord that are copied verbatim into the JSON line
LEDGER_FIELDS = ("booking_id", "event", "duration_ms")


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            entry["request_id"] = request_id

        for name in LEDGER_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        fields = getattr(record, "fields", None)
        if fields:
            entry["fields"] = fields

        if record.levelno >= logging.ERROR:
            entry["where"] = f"{record.module}.{record.funcName}:{record.lineno}"
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """
    Adapter with one helper per ledger event.

    Plain calls (``log.info(...)``) still work; the helpers attach the
    booking id, an event name and the amounts as structured fields.
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get('extra', {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs

    def ledger_event(
        self,
        level: int,
        event: str,
        msg: str,
        booking_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
        **fields
    ):
        self.log(level, msg, extra={
            "event": event,
            "booking_id": booking_id,
            "duration_ms": duration_ms,
            "fields": fields or None,
        })

    def booking_finalized(self, booking_id: str, payment_reference: str, amount_cents: int, duplicate: bool = False):
        self.ledger_event(
            logging.INFO,
            "booking_finalized",
            f"Booking {booking_id} finalized{' (duplicate)' if duplicate else ''}",
            booking_id=booking_id,
            payment_reference=payment_reference,
            amount_cents=amount_cents,
            duplicate=duplicate,
        )

    def booking_status_changed(self, booking_id: str, old_status: str, new_status: str):
        self.ledger_event(
            logging.INFO,
            "status_changed",
            f"Booking {booking_id}: {old_status} -> {new_status}",
            booking_id=booking_id,
            old_status=old_status,
            new_status=new_status,
        )

    def refund_applied(self, booking_id: str, payment_id: str, granted_cents: int, requested_cents: int, refund_reference: str):
        self.ledger_event(
            logging.INFO,
            "refund_applied",
            f"Refunded {granted_cents} of {requested_cents} cents on payment {payment_id}",
            booking_id=booking_id,
            payment_id=payment_id,
            granted_cents=granted_cents,
            requested_cents=requested_cents,
            refund_reference=refund_reference,
        )

    def ledger_violation(self, booking_id: str, message: str, **amounts):
        """Money and ledger disagree. Needs a human."""
        self.ledger_event(
            logging.CRITICAL,
            "ledger_violation",
            f"LEDGER CONSISTENCY VIOLATION on booking {booking_id}: {message}",
            booking_id=booking_id,
            **amounts,
        )

    def side_effect_failed(self, booking_id: str, step: str, error: str):
        self.ledger_event(
            logging.WARNING,
            "side_effect_failed",
            f"Side effect '{step}' failed for booking {booking_id}: {error}",
            booking_id=booking_id,
            step=step,
            error=error,
        )

    def api_request(self, method: str, path: str, status_code: int, duration_ms: float):
        self.ledger_event(
            logging.INFO,
            "http_request",
            f"{method} {path} - {status_code}",
            duration_ms=duration_ms,
            status_code=status_code,
        )


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure the root logger and uvicorn's loggers.

    Args:
        level: Log level name
        json_format: JSON lines (production) or plain text (local runs)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    for logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        logging.getLogger(logger_name).handlers = [handler]

    # Client libraries log every request at INFO
    for noisy in ("httpx", "httpcore", "stripe", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name), {})


def set_request_context(request_id: str):
    request_id_var.set(request_id)


def clear_request_context():
    request_id_var.set('')
