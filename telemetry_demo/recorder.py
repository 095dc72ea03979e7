"""
Metrics recorder: turns one RequestOutcome into instrument mutations.

Every outcome increments ``http_requests_total`` and observes
``http_request_duration_ms``; outcomes with ``status >= 400`` also increment
``http_errors_total``. All three are labelled by (method, route, status).
"""
import logging
from dataclasses import dataclass
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram

logger = logging.getLogger(__name__)

LABEL_NAMES = ('method', 'route', 'status')
DURATION_BUCKETS_MS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)


@dataclass(frozen=True)
class RequestOutcome:
    method: str
    route: str
    status: int
    duration_ms: int
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.status >= 400

    def attributes(self) -> dict:
        return {
            'method': self.method.upper(),
            'route': self.route,
            'status': str(self.status),
        }


class MetricInstruments:
    """The three request instruments, registered on one registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.requests_total = Counter(
            'http_requests_total', 'Total number of HTTP requests',
            labelnames=LABEL_NAMES, registry=self.registry
        )
        self.errors_total = Counter(
            'http_errors_total', 'Total number of failed HTTP requests',
            labelnames=LABEL_NAMES, registry=self.registry
        )
        self.duration_ms = Histogram(
            'http_request_duration_ms', 'Histogram of HTTP request durations in ms',
            labelnames=LABEL_NAMES, buckets=DURATION_BUCKETS_MS, registry=self.registry
        )


def record_request(instruments: Optional[MetricInstruments], outcome: RequestOutcome) -> None:
    if instruments is None:
        logger.warning("Metrics not initialized yet, skipping recording of %s %s",
                       outcome.method, outcome.route)
        return

    labels = outcome.attributes()
    try:
        instruments.requests_total.labels(**labels).inc()
        instruments.duration_ms.labels(**labels).observe(max(0, outcome.duration_ms))
        if outcome.is_error:
            instruments.errors_total.labels(**labels).inc()
    except Exception as e:
        # Recording sits on the request hot path; never let it raise
        logger.error(f"Error recording metrics: {e}")
