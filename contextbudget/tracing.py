"""OpenTelemetry helpers.

Only the OpenTelemetry API is required. Without an SDK configured by the host
application, spans are no-ops.
"""

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode

TRACER_NAME = "contextbudget"


def get_tracer():
    """Get the contextbudget tracer from the globally configured provider."""
    return trace.get_tracer(TRACER_NAME)


def mark_span_error(span: Span, error: BaseException) -> None:
    """Record an exception on a span and flag the span as failed."""
    span.record_exception(error)
    span.set_status(Status(StatusCode.ERROR, str(error)))
