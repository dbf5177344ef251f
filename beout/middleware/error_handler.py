"""Error handling: AuthError -> JSON response, and a last-resort 500 handler."""

import logging
import traceback

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from beout.exceptions import AuthError, TokenExchangeFailed
from beout.middleware.logging import redact_pii

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "provider_denied": 400,
    "invalid_assertion": 400,
    "state_mismatch": 400,
    "token_exchange_failed": 400,
    "invalid_challenge": 400,
    "session_expired": 401,
    "session_rejected": 401,
    "backend_unreachable": 502,
    "storage_unavailable": 503,
    "configuration_error": 503,
    "timeout": 504,
}


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map an AuthError to its HTTP status. Provider bodies stay in the log."""
    status_code = STATUS_BY_CODE.get(exc.code, 400)
    if isinstance(exc, TokenExchangeFailed) and exc.provider_error:
        logger.warning("%s: %s | provider said: %s", exc.code, exc, redact_pii(exc.provider_error))
    elif status_code >= 500:
        logger.error("%s: %s", exc.code, exc)
    else:
        logger.info("%s: %s", exc.code, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.user_message, "error": exc.code},
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch unhandled exceptions and return safe error responses."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            error_msg = redact_pii(str(exc))
            tb = traceback.format_exc()

            logger.error(
                "Unhandled exception: %s\n%s",
                error_msg,
                redact_pii(tb),
            )

            return JSONResponse(
                status_code=500,
                content={
                    "detail": "An internal error occurred. Please try again later.",
                    "error_type": type(exc).__name__,
                },
            )
