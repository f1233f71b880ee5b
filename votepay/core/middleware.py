"""
Request/response logging middleware.

The body is read once here and replayed to downstream handlers, so the webhook
signature check and the route both see the same bytes. Every request log line
carries a request id and, when one can be found, the transaction reference it
concerns, so a payment can be followed from initiation through its callbacks.

Payer data never reaches the logs verbatim: phone and account numbers are
masked to their first and last three digits, emails and credentials are
redacted, and callback bodies are not logged at all.
"""

import json
import logging
import re
import time
import uuid
from typing import Any, Callable, Dict, Optional, Set
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from votepay.core.monitoring import error_monitor

REDACTED_KEYS: Set[str] = {
    "password", "token", "access_token", "secret", "client_secret",
    "key", "api_key", "apikey", "authorization",
    "signature", "x_signature", "x_monitoring_key",
    "customer_email", "email", "to",
}

# Shown as 024****567
MASKED_KEYS: Set[str] = {"account_number", "phone_number", "phone", "msisdn"}

SENSITIVE_HEADERS: Set[str] = {
    "authorization", "cookie", "set-cookie",
    "x-signature", "x-api-key", "x-monitoring-key",
}

# Reference fields in priority order
REFERENCE_KEYS = ("transaction_id", "reference", "ext_transaction_id", "client_reference")

# Paths whose bodies are never logged
SKIP_BODY_PATHS = ("/api/payments/bulkclix-webhook",)

MAX_LOGGED_BODY_BYTES = 10000


def mask_number(value: Any) -> str:
    digits = re.sub(r"\D", "", str(value))
    if len(digits) <= 6:
        return "*" * len(digits)
    return f"{digits[:3]}{'*' * (len(digits) - 6)}{digits[-3:]}"


def sanitize(data: Any, depth: int = 0) -> Any:
    """Return a copy of `data` with payer identifiers masked and secrets redacted."""
    if depth > 10:
        return "[DEPTH_LIMIT]"

    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            lowered = str(key).lower()
            if lowered in REDACTED_KEYS:
                sanitized[key] = "[REDACTED]"
            elif lowered in MASKED_KEYS and value is not None:
                sanitized[key] = mask_number(value)
            else:
                sanitized[key] = sanitize(value, depth + 1)
        return sanitized

    if isinstance(data, list):
        return [sanitize(item, depth + 1) for item in data]

    return data


def _sanitize_headers(headers: dict) -> dict:
    return {
        k: ("[REDACTED]" if k.lower() in SENSITIVE_HEADERS else v)
        for k, v in headers.items()
    }


def _parse_json(body: bytes) -> Optional[Any]:
    if not body:
        return None
    try:
        return json.loads(body.decode())
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def find_transaction_ref(query_params: Dict[str, str], payload: Any) -> Optional[str]:
    """First reference-like value in the query string, then in a JSON object body."""
    for source in (query_params, payload if isinstance(payload, dict) else {}):
        for key in REFERENCE_KEYS:
            value = source.get(key)
            if value not in (None, ""):
                return str(value)
    return None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request and response with a request id and transaction reference."""

    def __init__(self, app, logger_name: str = "votepay.requests"):
        super().__init__(app)
        self.logger = logging.getLogger(logger_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        request_id = f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id

        # Read body once and re-construct the receive channel for downstream readers
        body = await request.body()
        request.state.body = body

        async def receive():
            return {"type": "http.request", "body": body}

        request._receive = receive

        query_params = dict(request.query_params)
        payload = _parse_json(body) if request.method in ("POST", "PUT", "PATCH") else None
        context = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "transaction_ref": find_transaction_ref(query_params, payload),
        }

        self._log_request(request, context, query_params, payload)

        try:
            response = await call_next(request)
        except Exception as e:
            error_monitor.log_error(e, {
                **context,
                "process_time": time.time() - start_time,
                "context": "middleware_error",
            })
            raise

        self._log_response(response, context, time.time() - start_time)
        response.headers["X-Request-ID"] = request_id
        return response

    def _log_request(self, request: Request, context: dict, query_params: dict, payload: Any):
        self.logger.info(
            f"[{context['request_id']}] {request.method} {request.url.path} - Request started",
            extra={
                **context,
                "query_params": sanitize(query_params),
                "client_ip": request.client.host if request.client else "unknown",
            },
        )

        if payload is not None and self._should_log_body(request):
            self.logger.debug(f"[{context['request_id']}] Request body: {json.dumps(sanitize(payload))}")

    def _log_response(self, response: Response, context: dict, process_time: float):
        status_code = response.status_code
        level = logging.INFO if status_code < 400 else logging.WARNING if status_code < 500 else logging.ERROR

        self.logger.log(
            level,
            f"[{context['request_id']}] {context['method']} {context['path']} - {status_code} - {process_time:.3f}s",
            extra={
                **context,
                "status_code": status_code,
                "process_time": process_time,
                "response_headers": _sanitize_headers(dict(response.headers)),
            },
        )

    def _should_log_body(self, request: Request) -> bool:
        if request.url.path.startswith(SKIP_BODY_PATHS):
            return False

        try:
            return int(request.headers.get("content-length", "0")) <= MAX_LOGGED_BODY_BYTES
        except (ValueError, TypeError):
            return True
