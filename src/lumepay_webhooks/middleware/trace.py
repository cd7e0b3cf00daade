"""Middleware binding trace_id / request_id to the structlog context."""
from __future__ import annotations

import time
from uuid import UUID, uuid4

import structlog
from aiohttp import web

from lumepay_webhooks.services.dependencies import MERCHANT_HEADER

TRACE_ID_HEADER = "X-Trace-Id"
REQUEST_ID_HEADER = "X-Request-Id"

logger = structlog.get_logger(__name__)


def is_valid_uuid(value: str) -> bool:
    try:
        UUID(value)
        return True
    except (ValueError, AttributeError):
        return False


def _id_from_header(request: web.Request, header: str) -> str:
    value = request.headers.get(header)
    if not value or not is_valid_uuid(value):
        value = str(uuid4())
    return value


def create_trace_middleware(service_name: str):
    @web.middleware
    async def trace_middleware(request: web.Request, handler):
        start = time.monotonic()
        trace_id = _id_from_header(request, TRACE_ID_HEADER)
        request_id = _id_from_header(request, REQUEST_ID_HEADER)
        request["trace_id"] = trace_id
        request["request_id"] = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            trace_id=trace_id,
            request_id=request_id,
            service=service_name,
            method=request.method,
            path=request.path,
        )
        merchant = request.headers.get(MERCHANT_HEADER)
        if merchant:
            structlog.contextvars.bind_contextvars(merchant=merchant)

        try:
            response = await handler(request)
            logger.info(
                "Request completed",
                status_code=response.status,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            response.headers[TRACE_ID_HEADER] = trace_id
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        except web.HTTPException as exc:
            logger.warning(
                "Request failed with HTTP exception",
                status_code=exc.status_code,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
                error=exc.text,
            )
            exc.headers[TRACE_ID_HEADER] = trace_id
            exc.headers[REQUEST_ID_HEADER] = request_id
            raise
        except Exception:
            logger.exception(
                "Request failed with exception",
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise
        finally:
            structlog.contextvars.clear_contextvars()

    return trace_middleware
