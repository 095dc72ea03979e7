"""
Telemetry facade: metric instruments, traces, structured logs, and their export.

A ``Telemetry`` object owns one private Prometheus registry with the request
instruments, a background pusher that ships the registry to the collector
every export interval, a tracer provider whose spans are batched to the
collector over OTLP, and a bounded log queue drained in batches by a
background exporter thread. Recording calls never block and never raise;
export failures are logged locally and the batch is dropped.
"""
import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import CollectorRegistry, push_to_gateway

from .config import TelemetryConfig
from .exceptions import AlreadyInitialized, ExportFailure
from .recorder import MetricInstruments, RequestOutcome, record_request

logger = logging.getLogger(__name__)

TRACER_NAME = "telemetry_demo"


def severity_for_status(status: int) -> str:
    if status >= 500:
        return "ERROR"
    if status >= 400:
        return "WARN"
    return "INFO"


def current_trace_ids() -> Dict[str, str]:
    """trace_id/span_id of the active span, empty when there is none."""
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return {}
    return {
        "trace_id": format(span_context.trace_id, "032x"),
        "span_id": format(span_context.span_id, "016x"),
    }


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LogRecord:
    severity: str
    body: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utc_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "severityText": self.severity,
            "body": self.body,
            "attributes": self.attributes,
        }


class PushGatewayMetricExporter:
    """Pushes a whole registry to a Prometheus push gateway."""

    def __init__(self, gateway: str, job: str, grouping_key: Optional[Dict[str, str]] = None,
                 timeout: float = 5.0):
        self.gateway = gateway
        self.job = job
        self.grouping_key = grouping_key or {}
        self.timeout = timeout

    def export(self, registry: CollectorRegistry) -> None:
        try:
            push_to_gateway(self.gateway, job=self.job, registry=registry,
                            grouping_key=self.grouping_key, timeout=self.timeout)
        except OSError as e:
            raise ExportFailure(f"metric push to {self.gateway} failed: {e}") from e


class HttpLogExporter:
    """POSTs batches of log records as JSON to the collector."""

    def __init__(self, endpoint: str, resource: Dict[str, str], timeout: float = 5.0,
                 session: Optional[requests.Session] = None):
        self.endpoint = endpoint
        self.resource = resource
        self.timeout = timeout
        self.session = session or requests.Session()

    def export(self, records: List[LogRecord]) -> None:
        payload = {
            "resource": self.resource,
            "records": [r.to_dict() for r in records],
        }
        # attribute values are caller supplied; anything JSON can't encode is sent as str()
        body = json.dumps(payload, default=str)
        try:
            response = self.session.post(
                self.endpoint, data=body, headers={'Content-Type': 'application/json'},
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise ExportFailure(f"log export to {self.endpoint} failed: {e}") from e

    def close(self) -> None:
        self.session.close()


class PeriodicMetricPusher:
    """Background thread that exports the registry every interval, plus once at shutdown."""

    def __init__(self, exporter, registry: CollectorRegistry, interval_ms: int):
        self.exporter = exporter
        self.registry = registry
        self.interval_s = interval_ms / 1000.0
        self.failures = 0
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="metric-export", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            self.push()
        self.push()

    def push(self) -> bool:
        try:
            self.exporter.export(self.registry)
            return True
        except ExportFailure as e:
            self.failures += 1
            logger.warning("Dropping metric batch: %s", e)
        except Exception:
            self.failures += 1
            logger.exception("Unexpected error pushing metrics, dropping batch")
        return False

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout)
        return not self._thread.is_alive()


class LogBatchProcessor:
    """
    Bounded queue of log records drained in batches by a background thread.

    ``emit`` never blocks: when the queue is full the record is dropped and
    counted. The thread exports every ``schedule_delay_ms``, or earlier once a
    full batch is waiting, and drains whatever is left on shutdown. A batch
    whose export fails for any reason is dropped; the thread keeps running.
    """

    def __init__(self, exporter, max_queue_size: int = 2048, max_batch_size: int = 512,
                 schedule_delay_ms: int = 5000):
        self.exporter = exporter
        self.max_batch_size = max_batch_size
        self.schedule_delay_s = schedule_delay_ms / 1000.0
        self.dropped = 0
        self.failed_batches = 0
        self._queue = queue.Queue(maxsize=max_queue_size)
        self._wakeup = threading.Event()
        self._stop_event = threading.Event()
        self._export_lock = threading.Lock()
        self._thread = threading.Thread(target=self._run, name="log-export", daemon=True)

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()

    def emit(self, record: LogRecord) -> bool:
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1
            logger.warning("Log queue full, dropping record: %s", record.body)
            return False
        if self._queue.qsize() >= self.max_batch_size:
            self._wakeup.set()
        return True

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._wakeup.wait(self.schedule_delay_s)
            self._wakeup.clear()
            self.force_flush()
        self.force_flush()

    def force_flush(self) -> None:
        with self._export_lock:
            while True:
                batch = []
                while len(batch) < self.max_batch_size:
                    try:
                        batch.append(self._queue.get_nowait())
                    except queue.Empty:
                        break
                if not batch:
                    return
                try:
                    self.exporter.export(batch)
                except ExportFailure as e:
                    self.failed_batches += 1
                    logger.warning("Dropping %d log records: %s", len(batch), e)
                except Exception:
                    self.failed_batches += 1
                    logger.exception("Unexpected error exporting logs, dropping %d records", len(batch))

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        self._stop_event.set()
        self._wakeup.set()
        if self._thread.is_alive():
            self._thread.join(timeout)
        return not self._thread.is_alive()


class Telemetry:
    """
    Owns the request instruments, the tracer and the log sink for one service.

    Lifecycle: ``initialize()`` once, record for as long as needed, then
    ``shutdown()`` to drain pending batches. Calling ``initialize()`` again
    before ``shutdown()`` raises ``AlreadyInitialized``. Recording before
    initialization (or after shutdown) logs a warning and does nothing; spans
    started then are non-recording.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.config: Optional[TelemetryConfig] = None
        self.registry: Optional[CollectorRegistry] = None
        self.instruments: Optional[MetricInstruments] = None
        self.resource: Dict[str, str] = {}
        self._pusher: Optional[PeriodicMetricPusher] = None
        self._log_processor: Optional[LogBatchProcessor] = None
        self._log_exporter = None
        self._tracer_provider: Optional[TracerProvider] = None
        self._tracer = None

    @property
    def is_initialized(self) -> bool:
        return self.instruments is not None

    @property
    def tracer(self):
        return self._tracer or trace.NoOpTracer()

    def initialize(self, config: TelemetryConfig, metric_exporter=None, log_exporter=None,
                   span_exporter=None):
        """
        Build instruments and the tracer, and start the export threads.

        ``metric_exporter``, ``log_exporter`` and ``span_exporter`` replace the
        push gateway, HTTP log and OTLP span exporters; when
        ``config.export_enabled`` is false and none is given, that signal stays
        local to the process.
        """
        with self._lock:
            if self.instruments is not None:
                raise AlreadyInitialized(
                    f"Telemetry for {self.config.service_name} is already initialized; "
                    "call shutdown() first"
                )

            self.config = config
            self.resource = {
                "service.name": config.service_name,
                "service.version": config.service_version,
            }
            self.registry = CollectorRegistry()
            self.instruments = MetricInstruments(self.registry)

            if metric_exporter is None and config.export_enabled:
                metric_exporter = PushGatewayMetricExporter(
                    config.metrics_gateway, job=config.service_name,
                    grouping_key={"version": config.service_version},
                )
            if log_exporter is None and config.export_enabled:
                log_exporter = HttpLogExporter(config.log_endpoint, self.resource)
            if span_exporter is None and config.export_enabled and config.traces_enabled:
                span_exporter = OTLPSpanExporter(endpoint=config.trace_endpoint)
            self._log_exporter = log_exporter

            # not installed as the global provider so several instances can coexist
            self._tracer_provider = TracerProvider(resource=Resource.create(self.resource))
            if span_exporter is not None:
                self._tracer_provider.add_span_processor(
                    BatchSpanProcessor(span_exporter, schedule_delay_millis=config.export_interval_ms)
                )
            self._tracer = self._tracer_provider.get_tracer(TRACER_NAME, config.service_version)

            if metric_exporter is not None:
                self._pusher = PeriodicMetricPusher(
                    metric_exporter, self.registry, config.export_interval_ms
                )
                self._pusher.start()
            if log_exporter is not None:
                self._log_processor = LogBatchProcessor(
                    log_exporter,
                    max_queue_size=config.log_queue_size,
                    max_batch_size=config.log_batch_size,
                    schedule_delay_ms=config.export_interval_ms,
                )
                self._log_processor.start()

        logger.info(
            "Telemetry initialized for %s %s (metrics=%s, logs=%s, traces=%s)",
            config.service_name,
            config.service_version,
            "push" if self._pusher else "local",
            "export" if self._log_processor else "local",
            "export" if span_exporter is not None else "local",
        )
        return self

    def record_request(self, outcome: RequestOutcome) -> None:
        record_request(self.instruments, outcome)

    def emit_log(self, severity: str, message: str, attributes: Optional[Dict[str, Any]] = None) -> None:
        severity = severity.upper()
        attributes = dict(attributes or {})
        if not self.is_initialized:
            logger.warning("Logger not initialized, dropping log record: %s", message)
            return

        for key, value in current_trace_ids().items():
            attributes.setdefault(key, value)
        logger.log(logging.DEBUG, "[%s] %s %s", severity, message, attributes)
        processor = self._log_processor
        if processor is not None:
            processor.emit(LogRecord(severity=severity, body=message, attributes=attributes))

    def force_flush(self, timeout: float = 30.0) -> None:
        if self._pusher is not None:
            self._pusher.push()
        if self._log_processor is not None:
            self._log_processor.force_flush()
        if self._tracer_provider is not None:
            self._tracer_provider.force_flush(int(timeout * 1000))

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """Flush pending batches and stop exporters. Returns True if drained in time."""
        with self._lock:
            if self.instruments is None:
                logger.debug("Telemetry shutdown requested but it was never initialized")
                return True
            pusher, processor = self._pusher, self._log_processor
            log_exporter = self._log_exporter
            tracer_provider = self._tracer_provider
            self.instruments = None
            self._pusher = None
            self._log_processor = None
            self._log_exporter = None
            self._tracer_provider = None
            self._tracer = None

        deadline = None if timeout is None else time.monotonic() + timeout

        def remaining():
            if deadline is None:
                return None
            return max(0.0, deadline - time.monotonic())

        drained = True
        if pusher is not None:
            drained = pusher.shutdown(remaining()) and drained
        if processor is not None:
            drained = processor.shutdown(remaining()) and drained
            if processor.dropped:
                logger.warning("%d log records were dropped due to a full queue", processor.dropped)
        if hasattr(log_exporter, "close"):
            log_exporter.close()
        if tracer_provider is not None:
            left = remaining()
            flush_ms = 30000 if left is None else int(left * 1000)
            drained = tracer_provider.force_flush(flush_ms) and drained
            tracer_provider.shutdown()

        if drained:
            logger.info("Telemetry shut down, pending batches flushed")
        else:
            logger.warning("Telemetry shutdown timed out; the final batch may be lost")
        return drained
