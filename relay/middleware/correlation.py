# ==== CORRELATION ID MIDDLEWARE ==== #

"""
Correlation ID middleware for request tracing in the Feishu relay.

Propagates or generates an X-Correlation-Id per request, binds it into the
loguru context for everything logged while the request runs, and records
request latency.
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from relay.observability.metrics import relay_request_latency_seconds
from relay.observability.tracing import get_tracer


tracer = get_tracer(__name__)


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Add correlation IDs to requests and responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(
            "X-Correlation-Id",
            str(uuid.uuid4())
        )

        # Store in request state for downstream access
        request.state.correlation_id = correlation_id

        start_time = time.perf_counter()

        with tracer.start_as_current_span("http_request") as span, \
                logger.contextualize(correlation_id=correlation_id):
            span.set_attribute("http.method", request.method)
            span.set_attribute("http.url", str(request.url))
            span.set_attribute("correlation_id", correlation_id)

            response = await call_next(request)
            response.headers["X-Correlation-Id"] = correlation_id

            # Unmatched paths share one label to bound cardinality
            route = request.scope.get("route")
            path = getattr(route, "path", "unmatched")
            relay_request_latency_seconds.labels(
                method=request.method,
                path=path,
            ).observe(time.perf_counter() - start_time)

            span.set_attribute("http.status_code", response.status_code)
            return response
