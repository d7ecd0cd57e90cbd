"""Tests for calsync.core.telemetry and calsync.core.metrics.

Covers:
- init_telemetry returns a no-op tracer without an OTLP endpoint
- provider_span names, attributes and error status
- capture_exception logs, records on the span and bumps the failure counter
- ProviderMetrics request counters, latency histogram, refresh and sync-failure counters
"""

from __future__ import annotations

import logging

import pytest
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import REGISTRY

from calsync.core.metrics import ProviderMetrics
from calsync.core.telemetry import capture_exception, init_telemetry, provider_span

pytestmark = pytest.mark.unit


def _reset_otel_global_state():
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None


@pytest.fixture(autouse=True)
def otel_provider():
    """Set up an in-memory TracerProvider for every test, then tear down."""
    _reset_otel_global_state()
    exporter = InMemorySpanExporter()
    provider = TracerProvider(resource=Resource.create({"service.name": "calsync-test"}))
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    yield exporter
    provider.shutdown()
    _reset_otel_global_state()


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


# ---------------------------------------------------------------------------
# init_telemetry
# ---------------------------------------------------------------------------


class TestInitTelemetry:
    def test_without_endpoint(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        tracer = init_telemetry("calsync-test")
        assert tracer is not None


# ---------------------------------------------------------------------------
# provider_span
# ---------------------------------------------------------------------------


class TestProviderSpan:
    def test_span_name_and_attributes(self, otel_provider):
        with provider_span("create_event", provider="google", calendar_id="primary", skipped=None):
            pass
        (span,) = otel_provider.get_finished_spans()
        assert span.name == "calsync.google.create_event"
        assert span.attributes["calsync.provider"] == "google"
        assert span.attributes["calsync.calendar_id"] == "primary"
        assert "calsync.skipped" not in span.attributes

    def test_error_status(self, otel_provider):
        with pytest.raises(ValueError, match="boom"):
            with provider_span("delete_event", provider="office365"):
                raise ValueError("boom")
        (span,) = otel_provider.get_finished_spans()
        assert span.status.status_code == trace.StatusCode.ERROR
        assert span.events[0].name == "exception"


# ---------------------------------------------------------------------------
# capture_exception
# ---------------------------------------------------------------------------


class TestCaptureException:
    def test_logs_records_and_counts(self, otel_provider, caplog):
        labels = {"provider": "webdav", "stage": "unit_capture"}
        before = _sample("calsync_sync_failures_total", labels)

        with caplog.at_level(logging.ERROR, logger="calsync.core.telemetry"):
            with provider_span("sync", provider="webdav"):
                capture_exception(RuntimeError("broken"), provider="webdav", stage="unit_capture", account="0x1")

        assert "broken" in caplog.text
        assert _sample("calsync_sync_failures_total", labels) == before + 1
        (span,) = otel_provider.get_finished_spans()
        assert any(e.name == "exception" for e in span.events)


# ---------------------------------------------------------------------------
# ProviderMetrics
# ---------------------------------------------------------------------------


class TestProviderMetrics:
    def test_record_request(self):
        labels = {"provider": "icloud", "operation": "unit_op", "outcome": "success"}
        before = _sample("calsync_provider_requests_total", labels)
        ProviderMetrics("icloud").record_request("unit_op", "success", latency=0.2)
        assert _sample("calsync_provider_requests_total", labels) == before + 1

    def test_latency_observed_in_histogram(self):
        labels = {"provider": "icloud", "operation": "unit_latency"}
        before = _sample("calsync_provider_request_duration_seconds_count", labels)
        ProviderMetrics("icloud").record_request("unit_latency", "error", latency=0.3)
        assert _sample("calsync_provider_request_duration_seconds_count", labels) == before + 1

    def test_no_latency_leaves_histogram_untouched(self):
        labels = {"provider": "icloud", "operation": "unit_no_latency"}
        ProviderMetrics("icloud").record_request("unit_no_latency", "success")
        assert _sample("calsync_provider_request_duration_seconds_count", labels) == 0.0

    def test_token_refresh(self):
        labels = {"provider": "unit-provider", "outcome": "success"}
        before = _sample("calsync_token_refresh_total", labels)
        ProviderMetrics("unit-provider").record_token_refresh("success")
        assert _sample("calsync_token_refresh_total", labels) == before + 1
