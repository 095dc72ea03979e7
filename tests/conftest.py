"""
Pytest configuration and shared fixtures
"""
import threading
import time

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from telemetry_demo.config import TelemetryConfig
from telemetry_demo.exceptions import ExportFailure, TransportFailure
from telemetry_demo.telemetry import Telemetry


class RecordingMetricExporter:
    """Stands in for the push gateway"""

    def __init__(self, fail=False):
        self.fail = fail
        self.pushes = 0
        self.attempts = 0

    def export(self, registry):
        self.attempts += 1
        if self.fail:
            raise ExportFailure("collector unreachable")
        self.pushes += 1


class RecordingLogExporter:
    """Stands in for the HTTP log collector"""

    def __init__(self, fail=False):
        self.fail = fail
        self.batches = []
        self._lock = threading.Lock()

    def export(self, records):
        if self.fail:
            raise ExportFailure("collector unreachable")
        with self._lock:
            self.batches.append(list(records))

    @property
    def records(self):
        with self._lock:
            return [r for batch in self.batches for r in batch]


class FakeClient:
    """HTTP client double: fixed status per path, optional latency or transport error."""

    def __init__(self, statuses=None, default_status=200, error=None, latency_s=0.0):
        self.statuses = statuses or {}
        self.default_status = default_status
        self.error = error
        self.latency_s = latency_s
        self.calls = []
        self.headers = []
        self._lock = threading.Lock()

    def request(self, method, path, body=None, timeout_ms=5000, headers=None):
        with self._lock:
            self.calls.append((method, path, body, timeout_ms))
            self.headers.append(dict(headers or {}))
        if self.latency_s:
            time.sleep(self.latency_s)
        if self.error is not None:
            raise self.error
        return self.statuses.get(path, self.default_status)

    @property
    def call_count(self):
        with self._lock:
            return len(self.calls)


class FlaskClientAdapter:
    """Routes traffic-worker calls into a Flask test client"""

    def __init__(self, test_client):
        self.test_client = test_client

    def request(self, method, path, body=None, timeout_ms=5000, headers=None):
        response = self.test_client.open(path, method=method, json=body, headers=headers)
        return response.status_code


def sample(telemetry, name, method, route, status):
    value = telemetry.registry.get_sample_value(
        name, {'method': method, 'route': route, 'status': str(status)}
    )
    return value or 0.0


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def telemetry_config():
    # spans only go where a test sends them, never to a real collector
    return TelemetryConfig(service_name="test-app", service_version="9.9.9", export_interval_ms=50,
                           traces_enabled=False)


@pytest.fixture
def metric_exporter():
    return RecordingMetricExporter()


@pytest.fixture
def log_exporter():
    return RecordingLogExporter()


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def telemetry(telemetry_config, metric_exporter, log_exporter, span_exporter):
    t = Telemetry().initialize(telemetry_config, metric_exporter=metric_exporter, log_exporter=log_exporter,
                               span_exporter=span_exporter)
    yield t
    t.shutdown(timeout=5)


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def transport_error():
    return TransportFailure("GET /health failed: read timed out")
