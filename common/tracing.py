"""
Request and ledger-operation tracing
Correlation ids arrive in X-Trace-ID / X-Span-ID, are kept in context variables
for the duration of a request, and every finished span is logged as one
`TRACE:` JSON line. Ledger operations open child spans tagged with the
account and job they touch, so one trace id follows a job's charge and refund.
"""
import uuid
import time
import json
from typing import Optional
from contextvars import ContextVar
from fastapi import Request
import logging

logger = logging.getLogger(__name__)

trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)
span_id_var: ContextVar[Optional[str]] = ContextVar('span_id', default=None)

class TraceSpan:

    def __init__(self, service: str, name: str, trace_id: str = None, parent_span_id: str = None):
        self.service = service
        self.name = name
        self.trace_id = trace_id or trace_id_var.get() or uuid.uuid4().hex[:16]
        self.parent_span_id = parent_span_id or span_id_var.get()
        self.span_id = uuid.uuid4().hex[:8]
        self.tags = {}
        self.status = "ok"
        self._started = time.time()
        self._tokens = None

    def tag(self, **tags):
        self.tags.update({k: v for k, v in tags.items() if v is not None})
        return self

    def fail(self, error: Exception):
        self.status = "error"
        return self.tag(error=type(error).__name__, error_message=str(error))

    def __enter__(self):
        self._tokens = (trace_id_var.set(self.trace_id), span_id_var.set(self.span_id))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.fail(exc_val)
        trace_id_var.reset(self._tokens[0])
        span_id_var.reset(self._tokens[1])
        logger.info("TRACE: " + json.dumps({
            "service": self.service,
            "operation": self.name,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "duration_ms": round((time.time() - self._started) * 1000, 2),
            "status": self.status,
            "tags": self.tags,
        }, default=str))

class Tracer:

    def __init__(self, service_name: str):
        self.service_name = service_name

    def span(self, name: str, account_id: str = None, job_id: str = None) -> TraceSpan:
        """Child of whatever span is active in this context."""
        return TraceSpan(self.service_name, name).tag(account_id=account_id, job_id=job_id)

    def span_from_request(self, request: Request) -> TraceSpan:
        span = TraceSpan(
            self.service_name,
            f"{request.method} {request.url.path}",
            trace_id=request.headers.get("X-Trace-ID"),
            parent_span_id=request.headers.get("X-Span-ID"),
        )
        return span.tag(http_method=request.method)

ledger_tracer = Tracer("credit-ledger")

def get_current_trace_id() -> Optional[str]:
    return trace_id_var.get()

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    """FastAPI middleware: one span per request, ids echoed back in the response headers"""
    with tracer.span_from_request(request) as span:
        request.state.trace_id = span.trace_id
        request.state.request_id = span.span_id

        response = await call_next(request)
        span.tag(http_status=response.status_code)
        if response.status_code >= 500:
            span.status = "error"

        response.headers["X-Trace-ID"] = span.trace_id
        response.headers["X-Span-ID"] = span.span_id
        return response
