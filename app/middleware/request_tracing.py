"""Request tracing middleware: one OpenTelemetry span and trace ID per request"""
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from opentelemetry import trace

from app.utils.logger import get_logger, set_trace_id

logger = get_logger(__name__)


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """
    Wraps each request in a server span.

    - Trace ID exposed to the logger and returned as X-Trace-ID
    - Request outcome logged with duration; 2FA endpoints are logged
      without bodies so codes never reach the logs
    """

    def __init__(self, app: ASGIApp, slow_request_threshold: float = 2.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span(
            f"HTTP {request.method} {request.url.path}",
            kind=trace.SpanKind.SERVER,
            attributes={
                "http.method": request.method,
                "http.target": request.url.path,
            }
        ) as span:
            span_context = span.get_span_context()
            if span_context.is_valid:
                trace_id = format(span_context.trace_id, '032x')
            else:
                # No SDK configured: spans are non-recording
                trace_id = uuid.uuid4().hex

            request.state.trace_id = trace_id
            set_trace_id(trace_id)

            try:
                response = await call_next(request)
                duration = time.time() - start_time

                span.set_attribute("http.status_code", response.status_code)
                response.headers["X-Trace-ID"] = trace_id

                log = logger.warning if duration > self.slow_request_threshold else logger.info
                log(
                    "Request completed",
                    method=request.method,
                    path=request.url.path,
                    duration=round(duration, 4),
                    status_code=response.status_code
                )
                return response

            except Exception as e:
                span.record_exception(e)
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                logger.error(
                    "Request failed",
                    method=request.method,
                    path=request.url.path,
                    duration=round(time.time() - start_time, 4),
                    error_type=type(e).__name__
                )
                raise
            finally:
                set_trace_id(None)


def get_trace_id(request: Request) -> str:
    """Extract trace ID from request state"""
    return getattr(request.state, "trace_id", "unknown")
