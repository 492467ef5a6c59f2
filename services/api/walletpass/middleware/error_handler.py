"""Last-resort guard that keeps stack traces and credentials off the wire."""

import traceback

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from walletpass.middleware.logging import redact_secrets

log = structlog.get_logger(__name__)

INTERNAL_ERROR_DETAIL = "Internal server error"


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turn anything the exception handlers did not claim into an opaque 500.

    Wallet devices treat any 5xx as "retry later", so the body carries no
    exception text. The redacted traceback goes to the log instead.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            await log.aerror(
                "unhandled_exception",
                exc_type=type(exc).__name__,
                method=request.method,
                path=redact_secrets(request.url.path),
                message=redact_secrets(str(exc)),
                traceback=redact_secrets(traceback.format_exc()),
            )
            return JSONResponse(status_code=500, content={"detail": INTERNAL_ERROR_DETAIL})
