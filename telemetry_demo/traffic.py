"""
Synthetic traffic generator.

A pool of independent worker threads, each looping: pick a random endpoint,
call it (through the fault injector), record exactly one RequestOutcome into
telemetry, sleep a random delay, and stop at wake time once the shared
shutdown flag is set.
"""
import enum
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import requests
from opentelemetry import propagate, trace
from opentelemetry.trace import Status, StatusCode
from requests.adapters import HTTPAdapter

from .config import TrafficConfig
from .exceptions import TransportFailure
from .faults import FaultInjector, transport_status
from .recorder import RequestOutcome
from .telemetry import severity_for_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EndpointSpec:
    method: str
    path: str
    body: Optional[Dict[str, Any]] = None


DEFAULT_ENDPOINTS = (
    EndpointSpec("GET", "/"),
    EndpointSpec("GET", "/health"),
    EndpointSpec("GET", "/users"),
    EndpointSpec("GET", "/users/1"),
    EndpointSpec("GET", "/users/999"),  # 404
    EndpointSpec("GET", "/profiles"),
    EndpointSpec("POST", "/users", {"name": "TestUser", "email": "test@example.com"}),
    EndpointSpec("PUT", "/users/1", {"name": "UpdatedUser"}),
    EndpointSpec("DELETE", "/users/999"),  # 404
)


class HttpClient:
    """Pooled requests session that hands back any status code without raising."""

    def __init__(self, base_url: str, pool_size: int = 10):
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
        self.session.mount('http://', adapter)
        self.session.mount('https://', adapter)

    def request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None,
                timeout_ms: int = 5000, headers: Optional[Dict[str, str]] = None) -> int:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=body, headers=headers,
                                            timeout=timeout_ms / 1000.0)
        except requests.RequestException as e:
            response = getattr(e, "response", None)
            raise TransportFailure(
                f"{method} {path} failed: {e}",
                status_code=getattr(response, "status_code", None),
            ) from e
        return response.status_code

    def close(self) -> None:
        self.session.close()


class WorkerStatus(enum.Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    AWAITING_OUTCOME = "awaiting_outcome"
    SLEEPING = "sleeping"
    STOPPED = "stopped"


@dataclass
class WorkerState:
    worker_id: int
    status: WorkerStatus = WorkerStatus.IDLE
    next_fire_time: Optional[float] = None
    iterations: int = 0


def _elapsed_ms(start: float) -> int:
    return max(0, int(round((time.monotonic() - start) * 1000)))


class TrafficWorker:
    """One request at a time, with randomized pacing between requests."""

    def __init__(self, worker_id: int, client, telemetry, endpoints: Sequence[EndpointSpec],
                 fault_injector: FaultInjector, stop_event: threading.Event,
                 timeout_ms: int = 5000, min_delay_ms: int = 500, max_delay_ms: int = 3000,
                 initial_delay_ms: int = 0, rng: Optional[random.Random] = None, sleep=time.sleep):
        if not endpoints:
            raise ValueError("endpoint catalogue must not be empty")
        self.client = client
        self.telemetry = telemetry
        self.endpoints = tuple(endpoints)
        self.fault_injector = fault_injector
        self.stop_event = stop_event
        self.timeout_ms = timeout_ms
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max(min_delay_ms, max_delay_ms)
        self.initial_delay_ms = initial_delay_ms
        self.rng = rng or random.Random()
        self.state = WorkerState(worker_id)
        self._sleep = sleep
        self._thread = threading.Thread(target=self.run, name=f"traffic-worker-{worker_id}", daemon=True)

    @property
    def worker_id(self) -> int:
        return self.state.worker_id

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread.is_alive():
            self._thread.join(timeout)
        return not self._thread.is_alive()

    def choose_endpoint(self) -> EndpointSpec:
        return self.rng.choice(self.endpoints)

    def next_delay_ms(self) -> int:
        return self.rng.randint(self.min_delay_ms, self.max_delay_ms)

    def dispatch(self, endpoint: EndpointSpec, headers: Optional[Dict[str, str]] = None) -> RequestOutcome:
        """Issue one call and return its single outcome; transport failures never escape."""
        method = endpoint.method.upper()
        start = time.monotonic()
        try:
            self.fault_injector.maybe_fail_network()
            real_status = self.client.request(method, endpoint.path, endpoint.body, self.timeout_ms,
                                              headers=headers)
        except TransportFailure as e:
            return RequestOutcome(method, endpoint.path, transport_status(e), _elapsed_ms(start), error=str(e))
        status = self.fault_injector.override_status(real_status)
        return RequestOutcome(method, endpoint.path, status, _elapsed_ms(start))

    def report(self, outcome: RequestOutcome) -> None:
        attributes = {
            "method": outcome.method,
            "route": outcome.route,
            "status": outcome.status,
            "duration": outcome.duration_ms,
        }
        self.telemetry.record_request(outcome)
        if outcome.error is not None:
            attributes["error"] = outcome.error
            self.telemetry.emit_log(
                "ERROR",
                f"[SIMULATOR] {outcome.method} {outcome.route} failed: {outcome.error}",
                attributes,
            )
        else:
            self.telemetry.emit_log(
                severity_for_status(outcome.status),
                f"[SIMULATOR] {outcome.method} {outcome.route} => {outcome.status}",
                attributes,
            )

    def attempt(self, endpoint: EndpointSpec) -> RequestOutcome:
        """
        Dispatch and report one call inside a client span.

        The span's context is injected into the outbound headers so the
        service joins the same trace, and the log record emitted by
        ``report`` carries its trace and span ids.
        """
        method = endpoint.method.upper()
        with self.telemetry.tracer.start_as_current_span(
            f"{method} {endpoint.path}",
            kind=trace.SpanKind.CLIENT,
            attributes={"http.method": method, "http.route": endpoint.path},
        ) as span:
            headers = {}
            propagate.inject(headers)
            outcome = self.dispatch(endpoint, headers)
            span.set_attribute("http.status_code", outcome.status)
            if outcome.error is not None:
                span.set_status(Status(StatusCode.ERROR, outcome.error))
            elif outcome.is_error:
                span.set_status(Status(StatusCode.ERROR, f"HTTP {outcome.status}"))
            self.report(outcome)
        return outcome

    def run_once(self) -> RequestOutcome:
        self.state.status = WorkerStatus.DISPATCHING
        endpoint = self.choose_endpoint()
        self.state.status = WorkerStatus.AWAITING_OUTCOME
        outcome = self.attempt(endpoint)
        self.state.iterations += 1
        return outcome

    def run(self) -> None:
        if self.initial_delay_ms > 0:
            self.state.status = WorkerStatus.SLEEPING
            self.state.next_fire_time = time.time() + self.initial_delay_ms / 1000.0
            self._sleep(self.initial_delay_ms / 1000.0)
        while True:
            if self.stop_event.is_set():
                break
            self.state.status = WorkerStatus.IDLE
            self.run_once()
            delay_ms = self.next_delay_ms()
            self.state.status = WorkerStatus.SLEEPING
            self.state.next_fire_time = time.time() + delay_ms / 1000.0
            self._sleep(delay_ms / 1000.0)
        self.state.status = WorkerStatus.STOPPED
        self.state.next_fire_time = None
        logger.debug("Traffic worker %s stopped after %s requests", self.worker_id, self.state.iterations)


class TrafficWorkerPool:
    """Fixed set of workers started with staggered offsets and one shared shutdown flag."""

    def __init__(self, telemetry, client, config: TrafficConfig,
                 endpoints: Optional[Sequence[EndpointSpec]] = None,
                 fault_injector: Optional[FaultInjector] = None, sleep=time.sleep):
        self.config = config
        self.telemetry = telemetry
        self.client = client
        self.endpoints = tuple(endpoints or DEFAULT_ENDPOINTS)
        self.stop_event = threading.Event()
        self._started = False

        seed_source = random.Random(config.seed)
        self.workers: List[TrafficWorker] = []
        for i in range(config.worker_count):
            rng = random.Random(seed_source.getrandbits(64))
            injector = fault_injector or FaultInjector.from_config(config, rng=rng)
            self.workers.append(TrafficWorker(
                worker_id=i,
                client=client,
                telemetry=telemetry,
                endpoints=self.endpoints,
                fault_injector=injector,
                stop_event=self.stop_event,
                timeout_ms=config.request_timeout_ms,
                min_delay_ms=config.min_delay_ms,
                max_delay_ms=config.max_delay_ms,
                initial_delay_ms=i * config.stagger_ms,
                rng=rng,
                sleep=sleep,
            ))

    @property
    def shutting_down(self) -> bool:
        return self.stop_event.is_set()

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info(
            "Starting %d traffic workers against %s (delay %s-%sms, timeout %sms)",
            len(self.workers),
            self.config.target_url,
            self.config.min_delay_ms,
            self.config.max_delay_ms,
            self.config.request_timeout_ms,
        )
        for worker in self.workers:
            worker.start()

    def stop(self) -> None:
        if not self.stop_event.is_set():
            logger.info("Stopping traffic workers; in-flight cycles will complete")
        self.stop_event.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        stopped = True
        for worker in self.workers:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            stopped = worker.join(remaining) and stopped
        return stopped

    def states(self) -> List[WorkerState]:
        return [worker.state for worker in self.workers]

    def total_iterations(self) -> int:
        return sum(worker.state.iterations for worker in self.workers)


def simulate_sweep(telemetry, client, endpoints: Optional[Sequence[EndpointSpec]] = None,
                   iterations: int = 5, delay_ms: int = 1000,
                   fault_injector: Optional[FaultInjector] = None,
                   timeout_ms: int = 5000, sleep=time.sleep) -> List[RequestOutcome]:
    """Walk the whole catalogue in order ``iterations`` times, recording every call."""
    if not telemetry.is_initialized:
        logger.error("Logger not available: telemetry is not initialized, skipping sweep")
        return []

    worker = TrafficWorker(
        worker_id=0,
        client=client,
        telemetry=telemetry,
        endpoints=tuple(endpoints or DEFAULT_ENDPOINTS),
        fault_injector=fault_injector or FaultInjector(),
        stop_event=threading.Event(),
        timeout_ms=timeout_ms,
        sleep=sleep,
    )
    outcomes = []
    for i in range(iterations):
        for endpoint in worker.endpoints:
            outcomes.append(worker.attempt(endpoint))
        if delay_ms > 0 and i < iterations - 1:
            sleep(delay_ms / 1000.0)
    logger.info("Sweep finished: %d requests over %d iterations", len(outcomes), iterations)
    return outcomes
