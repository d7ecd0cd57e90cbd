"""OpenTelemetry initialization, provider spans and the failure capture sink."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from calsync.core.metrics import ProviderMetrics

logger = logging.getLogger(__name__)

_TRACER_NAME = "calsync"

# Guard flag: True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str = "calsync") -> trace.Tracer:
    """Initialize OpenTelemetry tracing.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real TracerProvider
    with an OTLP gRPC exporter on the first call. Otherwise the no-op tracer
    from the default provider is returned.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        return trace.get_tracer(service_name)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)
    return trace.get_tracer(service_name)


@contextmanager
def provider_span(operation: str, *, provider: str, **attributes: Any) -> Iterator[trace.Span]:
    """Wrap a provider operation in a ``calsync.<provider>.<operation>`` span.

    Exceptions are recorded on the span and the status set to ERROR before the
    exception is re-raised.
    """
    tracer = trace.get_tracer(_TRACER_NAME)
    with tracer.start_as_current_span(
        f"calsync.{provider}.{operation}",
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        span.set_attribute("calsync.provider", provider)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"calsync.{key}", str(value))
        try:
            yield span
        except Exception as exc:
            span.set_status(trace.StatusCode.ERROR, str(exc))
            span.record_exception(exc)
            raise


def capture_exception(
    exc: BaseException,
    *,
    provider: str,
    stage: str,
    **context: Any,
) -> None:
    """Observability sink for failures that are deliberately swallowed.

    Logs the exception with its context, records it on the current span and
    bumps ``calsync_sync_failures_total``. Never raises.
    """
    logger.error(
        "Calendar %s failure (provider=%s): %s",
        stage,
        provider,
        exc,
        exc_info=exc,
        extra={"calsync_context": context} if context else None,
    )
    span = trace.get_current_span()
    if span.is_recording():
        span.record_exception(exc, attributes={"calsync.stage": stage})
    ProviderMetrics(provider).record_sync_failure(stage)
