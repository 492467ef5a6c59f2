"""Structured logging with credential redaction.

Wallet traffic carries two secrets that must never land in a log line: the
``ApplePass`` authentication token on PassKit calls (plus operator bearer
tokens) and the APNs push token a device hands over at registration. Every
path, message and traceback logged by this service goes through
:func:`redact_secrets` first.
"""

import logging
import re
import time
import uuid
from typing import Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

AUTH_HEADER_PATTERN = re.compile(r"\b(ApplePass|bearer|Bearer)\s+[A-Za-z0-9._\-+/=]+")
# APNs device tokens are 64+ hex characters
PUSH_TOKEN_PATTERN = re.compile(r"\b[0-9a-fA-F]{64,}\b")

REQUEST_ID_HEADER = "X-Request-ID"


def redact_secrets(text: str) -> str:
    """Mask authorization credentials and push tokens in text."""
    text = AUTH_HEADER_PATTERN.sub(r"\1 [REDACTED]", text)
    return PUSH_TOKEN_PATTERN.sub("[REDACTED_PUSH_TOKEN]", text)


def setup_logging(debug: bool = False) -> None:
    """Route structlog and stdlib logging to JSON lines on stdout."""
    level = logging.DEBUG if debug else logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", level=level)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log one line per request and tag every log emitted while serving it.

    The request id is taken from an inbound ``X-Request-ID`` header when a
    proxy supplied one, bound into structlog's context vars so service-level
    log calls inherit it, and echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        path = redact_secrets(request.url.path)
        log = structlog.get_logger()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        await log.ainfo(
            "request_handled",
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration_ms=elapsed_ms,
            client=request.client.host if request.client else "unknown",
        )
        structlog.contextvars.unbind_contextvars("request_id")
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
