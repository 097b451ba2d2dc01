"""Request tracing for the members admin API.

Every request gets an id (taken from X-Request-ID when the caller sends one),
which is bound to the logging context, echoed on the response, and forwarded
to Supabase by the REST client.
"""
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from libs.common.logging import (
    clear_request_context,
    configure_logging,
    get_logger,
    set_request_context,
)

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
QUIET_PATHS = frozenset({"/health"})


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = set_request_context(
            request_id=request.headers.get(REQUEST_ID_HEADER),
            path=request.url.path,
            method=request.method,
        )
        started = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "Unhandled error while serving request",
                    extra={"extra_fields": {"duration_ms": _elapsed_ms(started)}},
                )
                raise

            if request.url.path not in QUIET_PATHS:
                fields = {
                    "status_code": response.status_code,
                    "duration_ms": _elapsed_ms(started),
                }
                member_id = request.path_params.get("member_id")
                if member_id:
                    fields["member_id"] = member_id
                if response.status_code >= 500:
                    logger.error("Request failed", extra={"extra_fields": fields})
                elif response.status_code >= 400:
                    logger.warning("Request rejected", extra={"extra_fields": fields})
                else:
                    logger.info("Request served", extra={"extra_fields": fields})

            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_request_context()


def add_observability_middleware(app: FastAPI) -> None:
    """Configure logging and install request tracing on ``app``."""
    configure_logging()
    app.add_middleware(RequestContextMiddleware)
