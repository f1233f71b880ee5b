"""
Structured monitoring for the VotePay service.

Three kinds of JSON events go to stdout through the `votepay.monitor` logger:

    error        an exception with its context and a per-type running count
    performance  the duration of a monitored operation
    payment      a step in a transaction's lifecycle (initiated, rejected,
                 webhook_applied, webhook_ignored, status_resolved)

Counters live in memory for the lifetime of the process. With several server
instances each one reports only what it handled.
"""

import asyncio
import logging
import time
import json
import traceback
from collections import Counter
from typing import Dict, Any, Optional
from functools import wraps
from datetime import datetime, timezone
from votepay.core.exceptions import BaseAppError

SLOW_OPERATION_SECONDS = 5.0


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ErrorMonitor:
    """Error, performance and payment-event reporting for one process"""

    def __init__(self, logger_name: str = "votepay.monitor"):
        self.logger = logging.getLogger(logger_name)
        self.error_counts: Counter = Counter()
        self.payment_event_counts: Counter = Counter()

    def _emit(self, level: int, event: str, **fields):
        self.logger.log(level, json.dumps({"event": event, **fields, "timestamp": _timestamp()}, default=str))

    def log_error(self, error: Exception, context: Dict[str, Any] = None):
        """
        Record an exception.

        Stack traces are attached for unexpected errors and for application
        errors that map to a 5xx; 4xx application errors are expected traffic.
        """
        error_type = type(error).__name__
        self.error_counts[error_type] += 1

        fields = {
            "error_id": f"{error_type}_{int(time.time())}",
            "error_type": error_type,
            "error_message": str(error),
            "context": context or {},
            "count": self.error_counts[error_type],
        }
        if not isinstance(error, BaseAppError) or error.http_status_code >= 500:
            fields["stack_trace"] = traceback.format_exc()

        self._emit(logging.ERROR, "error", **fields)

    def log_performance(self, operation: str, duration: float, context: Dict[str, Any] = None):
        level = logging.WARNING if duration > SLOW_OPERATION_SECONDS else logging.INFO
        self._emit(level, "performance", operation=operation, duration=duration, context=context or {})

    def log_payment_event(self, event: str, transaction_id: str, status: Optional[str] = None, **details):
        """
        Record one step of a payment's lifecycle.

        Payer identifiers must not be passed in `details`; this output is not
        redacted.
        """
        self.payment_event_counts[event] += 1
        self._emit(
            logging.INFO,
            "payment",
            payment_event=event,
            transaction_id=transaction_id,
            status=status,
            details=details,
        )

    def get_error_summary(self) -> Dict[str, Any]:
        """In-memory counters for the monitoring endpoint."""
        return {
            "error_counts": dict(self.error_counts),
            "total_errors": sum(self.error_counts.values()),
            "payment_events": dict(self.payment_event_counts),
            "timestamp": _timestamp(),
            "mode": "ephemeral",
        }


# Global error monitor instance
error_monitor = ErrorMonitor()


def monitor_errors(operation_name: str = None):
    """
    Time a function and report its failures to `error_monitor`.

    Works on both coroutine functions and plain functions; exceptions are
    re-raised unchanged.
    """
    def decorator(func):
        op_name = operation_name or f"{func.__module__}.{func.__name__}"

        def finished(start_time: float, error: Exception = None):
            duration = time.time() - start_time
            if error is None:
                error_monitor.log_performance(op_name, duration)
            else:
                error_monitor.log_error(error, {"operation": op_name, "duration": duration})

        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                start_time = time.time()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    finished(start_time, e)
                    raise
                finished(start_time)
                return result

            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            start_time = time.time()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                finished(start_time, e)
                raise
            finished(start_time)
            return result

        return sync_wrapper

    return decorator


def setup_monitoring(level: str = "INFO"):
    """Send all logging to stdout as bare messages (the events are already JSON)."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    error_monitor._emit(logging.INFO, "system_startup", message="Monitoring initialized (stdout only)")
