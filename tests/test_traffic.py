import random
import threading
from unittest.mock import Mock, patch

import pytest
import requests
from opentelemetry import trace
from opentelemetry.trace import StatusCode

from conftest import FakeClient, sample, wait_for
from telemetry_demo.config import TrafficConfig
from telemetry_demo.exceptions import TransportFailure
from telemetry_demo.faults import FaultInjector
from telemetry_demo.traffic import (
    DEFAULT_ENDPOINTS,
    EndpointSpec,
    HttpClient,
    TrafficWorker,
    TrafficWorkerPool,
    WorkerStatus,
    simulate_sweep,
)

HEALTH = EndpointSpec("GET", "/health")


def make_worker(telemetry, client, endpoints=(HEALTH,), injector=None, stop_event=None, **kwargs):
    return TrafficWorker(
        worker_id=0,
        client=client,
        telemetry=telemetry,
        endpoints=endpoints,
        fault_injector=injector or FaultInjector.disabled(),
        stop_event=stop_event or threading.Event(),
        **kwargs
    )


class TestDispatch:

    def test_success_outcome(self, telemetry):
        worker = make_worker(telemetry, FakeClient(default_status=200))
        outcome = worker.dispatch(HEALTH)
        assert (outcome.method, outcome.route, outcome.status, outcome.error) == ("GET", "/health", 200, None)
        assert outcome.duration_ms >= 0

    def test_method_is_upper_cased(self, telemetry, fake_client):
        worker = make_worker(telemetry, fake_client)
        outcome = worker.dispatch(EndpointSpec("post", "/users", {"name": "x"}))
        assert outcome.method == "POST"
        assert fake_client.calls == [("POST", "/users", {"name": "x"}, 5000)]

    def test_transport_failure_is_recorded_not_raised(self, telemetry, transport_error):
        worker = make_worker(telemetry, FakeClient(error=transport_error))
        outcome = worker.dispatch(HEALTH)
        assert outcome.status == 500
        assert outcome.error == "GET /health failed: read timed out"

    def test_transport_failure_keeps_carried_status(self, telemetry):
        worker = make_worker(telemetry, FakeClient(error=TransportFailure("bad gateway", status_code=502)))
        assert worker.dispatch(HEALTH).status == 502

    def test_simulated_network_failure_never_reaches_client(self, telemetry, fake_client):
        injector = FaultInjector(p_network_failure=1, p_server_error=0, p_client_error=0)
        worker = make_worker(telemetry, fake_client, injector=injector)
        outcome = worker.dispatch(HEALTH)
        assert fake_client.call_count == 0
        assert outcome.status == 500
        assert outcome.error == "Simulated network failure"

    def test_status_override_carries_no_error(self, telemetry, fake_client):
        injector = FaultInjector(p_network_failure=0, p_server_error=1, p_client_error=0)
        worker = make_worker(telemetry, fake_client, injector=injector)
        outcome = worker.dispatch(HEALTH)
        assert fake_client.call_count == 1
        assert outcome.status == 500
        assert outcome.error is None

    def test_durations_bounded_by_timeout(self, telemetry):
        worker = make_worker(telemetry, FakeClient(latency_s=0.02), timeout_ms=1000)
        for _ in range(5):
            outcome = worker.dispatch(HEALTH)
            assert 0 <= outcome.duration_ms <= 1000 + 250


class TestRunOnce:

    def test_forced_client_error_scenario(self, telemetry):
        client = FakeClient(statuses={"/users/999": 404})
        injector = FaultInjector(p_network_failure=0, p_server_error=0, p_client_error=1)
        worker = make_worker(telemetry, client, endpoints=(EndpointSpec("GET", "/users/999"),), injector=injector)

        outcomes = [worker.run_once() for _ in range(20)]

        assert {o.status for o in outcomes} == {400}
        assert sample(telemetry, 'http_requests_total', 'GET', '/users/999', 400) == 20
        assert sample(telemetry, 'http_errors_total', 'GET', '/users/999', 400) == 20
        assert sample(telemetry, 'http_requests_total', 'GET', '/users/999', 404) == 0

    def test_exactly_one_outcome_per_attempt(self):
        telemetry = Mock(tracer=trace.NoOpTracer())
        client = FakeClient(statuses={"/users/999": 404}, error=None)
        injector = FaultInjector(p_network_failure=0.3, p_server_error=0.2, p_client_error=0.2,
                                 rng=random.Random(99))
        worker = make_worker(telemetry, client, endpoints=DEFAULT_ENDPOINTS, injector=injector,
                             rng=random.Random(5))

        attempts = 200
        outcomes = [worker.run_once() for _ in range(attempts)]

        assert telemetry.record_request.call_count == attempts
        assert telemetry.emit_log.call_count == attempts
        assert [c.args[0] for c in telemetry.record_request.call_args_list] == outcomes
        assert worker.state.iterations == attempts
        # network failures never hit the client, everything else does exactly once
        failed = sum(1 for o in outcomes if o.error is not None)
        assert client.call_count == attempts - failed

    def test_error_outcome_logged_as_error(self):
        telemetry = Mock(tracer=trace.NoOpTracer())
        injector = FaultInjector(p_network_failure=1, p_server_error=0, p_client_error=0)
        worker = make_worker(telemetry, FakeClient(), injector=injector)
        worker.run_once()

        severity, message, attributes = telemetry.emit_log.call_args.args
        assert severity == "ERROR"
        assert message == "[SIMULATOR] GET /health failed: Simulated network failure"
        assert attributes["error"] == "Simulated network failure"
        assert attributes["status"] == 500

    def test_warn_severity_for_client_errors(self):
        telemetry = Mock(tracer=trace.NoOpTracer())
        worker = make_worker(telemetry, FakeClient(default_status=404))
        worker.run_once()
        severity, message, attributes = telemetry.emit_log.call_args.args
        assert severity == "WARN"
        assert message == "[SIMULATOR] GET /health => 404"
        assert "error" not in attributes


class TestWorkerLoop:

    def test_stop_observed_at_wake_time(self, telemetry, fake_client):
        stop_event = threading.Event()
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            stop_event.set()

        worker = make_worker(telemetry, fake_client, stop_event=stop_event, sleep=sleep,
                             min_delay_ms=10, max_delay_ms=20)
        worker.run()

        # the in-flight cycle completes, including its sleep, then the worker stops
        assert worker.state.iterations == 1
        assert len(sleeps) == 1
        assert 0.010 <= sleeps[0] <= 0.020
        assert worker.state.status is WorkerStatus.STOPPED

    def test_stopped_before_first_fire(self, telemetry, fake_client):
        stop_event = threading.Event()
        stop_event.set()
        worker = make_worker(telemetry, fake_client, stop_event=stop_event,
                             initial_delay_ms=5, sleep=lambda s: None)
        worker.run()
        assert worker.state.iterations == 0
        assert fake_client.call_count == 0
        assert worker.state.status is WorkerStatus.STOPPED

    def test_delays_drawn_from_range(self, telemetry, fake_client):
        stop_event = threading.Event()
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 50:
                stop_event.set()

        worker = make_worker(telemetry, fake_client, stop_event=stop_event, sleep=sleep,
                             min_delay_ms=500, max_delay_ms=3000, rng=random.Random(3))
        worker.run()
        assert worker.state.iterations == 50
        assert all(0.5 <= s <= 3.0 for s in sleeps)

    def test_empty_catalogue_rejected(self, telemetry, fake_client):
        with pytest.raises(ValueError):
            make_worker(telemetry, fake_client, endpoints=())


class TestPool:

    def test_staggered_start_offsets(self, telemetry, fake_client):
        pool = TrafficWorkerPool(telemetry, fake_client, TrafficConfig(worker_count=5, stagger_ms=200))
        assert [w.initial_delay_ms for w in pool.workers] == [0, 200, 400, 600, 800]
        assert len({id(w.fault_injector) for w in pool.workers}) == 5

    def test_pool_runs_and_drains(self, telemetry, fake_client):
        config = TrafficConfig(worker_count=3, min_delay_ms=1, max_delay_ms=5, stagger_ms=2,
                               request_timeout_ms=1000, seed=11)
        pool = TrafficWorkerPool(telemetry, fake_client, config, endpoints=(HEALTH,),
                                 fault_injector=FaultInjector.disabled())
        pool.start()
        assert wait_for(lambda: pool.total_iterations() >= 30)

        pool.stop()
        assert pool.shutting_down
        assert pool.join(timeout=config.max_delay_ms / 1000.0 + 2.0)
        assert all(s.status is WorkerStatus.STOPPED for s in pool.states())

        total = pool.total_iterations()
        assert fake_client.call_count == total
        assert sample(telemetry, 'http_requests_total', 'GET', '/health', 200) == total

        # nothing fires once every worker is stopped
        threading.Event().wait(0.05)
        assert fake_client.call_count == total


class TestSweep:

    def test_sweep_walks_catalogue_in_order(self, telemetry):
        client = FakeClient(statuses={"/users/999": 404})
        sleeps = []
        outcomes = simulate_sweep(telemetry, client, iterations=2, delay_ms=500,
                                  fault_injector=FaultInjector.disabled(), sleep=sleeps.append)

        assert len(outcomes) == 2 * len(DEFAULT_ENDPOINTS)
        assert [o.route for o in outcomes[:len(DEFAULT_ENDPOINTS)]] == [e.path for e in DEFAULT_ENDPOINTS]
        assert sleeps == [0.5]
        assert sample(telemetry, 'http_requests_total', 'GET', '/users/999', 404) == 2
        assert sample(telemetry, 'http_requests_total', 'DELETE', '/users/999', 404) == 2

    def test_sweep_skipped_without_telemetry(self, fake_client):
        from telemetry_demo.telemetry import Telemetry

        assert simulate_sweep(Telemetry(), fake_client, iterations=1) == []
        assert fake_client.call_count == 0


class TestHttpClient:

    def test_any_status_is_returned(self):
        client = HttpClient("http://localhost:3000/")
        with patch.object(client.session, "request", return_value=Mock(status_code=418)) as request:
            assert client.request("GET", "/users/1", timeout_ms=2500) == 418
        request.assert_called_once_with("GET", "http://localhost:3000/users/1", json=None, headers=None,
                                        timeout=2.5)
        client.close()

    def test_timeout_becomes_transport_failure(self):
        client = HttpClient("http://localhost:3000")
        with patch.object(client.session, "request", side_effect=requests.Timeout("read timed out")):
            with pytest.raises(TransportFailure) as exc_info:
                client.request("GET", "/health")
        assert "read timed out" in str(exc_info.value)
        assert exc_info.value.status_code is None
        client.close()


class TestClientSpans:

    def test_attempt_runs_inside_client_span(self, telemetry, log_exporter, span_exporter):
        client = FakeClient(statuses={"/users/999": 404})
        worker = make_worker(telemetry, client, endpoints=(EndpointSpec("GET", "/users/999"),))
        worker.run_once()
        telemetry.force_flush()

        (span,) = span_exporter.get_finished_spans()
        assert span.name == "GET /users/999"
        assert span.kind is trace.SpanKind.CLIENT
        assert span.attributes["http.status_code"] == 404
        assert span.status.status_code is StatusCode.ERROR

        (record,) = log_exporter.records
        assert record.attributes["trace_id"] == format(span.context.trace_id, "032x")
        assert record.attributes["span_id"] == format(span.context.span_id, "016x")

    def test_trace_context_sent_with_request(self, telemetry, span_exporter):
        client = FakeClient()
        make_worker(telemetry, client).run_once()
        telemetry.force_flush()

        (span,) = span_exporter.get_finished_spans()
        traceparent = client.headers[0]["traceparent"]
        assert traceparent.split("-")[1] == format(span.context.trace_id, "032x")
        assert traceparent.split("-")[2] == format(span.context.span_id, "016x")

    def test_transport_failure_marks_span_as_error(self, telemetry, span_exporter, transport_error):
        make_worker(telemetry, FakeClient(error=transport_error)).run_once()
        telemetry.force_flush()

        (span,) = span_exporter.get_finished_spans()
        assert span.status.status_code is StatusCode.ERROR
        assert "read timed out" in span.status.description
        assert span.attributes["http.status_code"] == 500

    def test_successful_call_leaves_status_unset(self, telemetry, span_exporter):
        make_worker(telemetry, FakeClient()).run_once()
        telemetry.force_flush()
        (span,) = span_exporter.get_finished_spans()
        assert span.status.status_code is StatusCode.UNSET
