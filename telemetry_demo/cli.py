import argparse
import logging
import signal
import sys
import threading
import time

from werkzeug.serving import make_server

from .app import create_app
from .config import ServerConfig, TelemetryConfig, TrafficConfig, load_config
from .faults import FaultInjector
from .telemetry import Telemetry
from .traffic import HttpClient, TrafficWorkerPool, simulate_sweep

logger = logging.getLogger("telemetry-demo")

# Config keys that can be overridden from the command line, keyed by argparse dest
ARG_OVERRIDES = {
    "host": "HOST",
    "port": "PORT",
    "collector_url": "COLLECTOR_URL",
    "export_interval_ms": "EXPORT_INTERVAL_MS",
    "target_url": "TARGET_URL",
    "workers": "WORKER_COUNT",
    "min_delay_ms": "MIN_DELAY_MS",
    "max_delay_ms": "MAX_DELAY_MS",
    "stagger_ms": "STAGGER_MS",
    "timeout_ms": "REQUEST_TIMEOUT_MS",
    "p_network_failure": "P_NETWORK_FAILURE",
    "p_server_error": "P_SERVER_ERROR",
    "p_client_error": "P_CLIENT_ERROR",
    "seed": "SEED",
    "log_level": "LOG_LEVEL",
}


def configure_logging(level="INFO", log_file=""):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def parse_arguments(argv=None, config=None):
    """Parse command line arguments; defaults come from the environment config."""
    config = config or load_config()
    parser = argparse.ArgumentParser(
        description='Instrumented demo service with a self-driving traffic generator',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('command', nargs='?', choices=['serve', 'sweep'], default='serve',
                        help='serve: run the app and traffic workers; sweep: one-shot sweep against --target-url')

    parser.add_argument('--host', type=str, default=config["HOST"], help='Bind address for the HTTP service')
    parser.add_argument('--port', type=int, default=config["PORT"], help='Port for the HTTP service')
    parser.add_argument('--collector-url', type=str, default=config["COLLECTOR_URL"],
                        help='Base URL of the telemetry collector')
    parser.add_argument('--export-interval-ms', type=int, default=config["EXPORT_INTERVAL_MS"],
                        help='Metric and log export cadence')
    parser.add_argument('--no-export', action='store_true', default=not config["EXPORT_ENABLED"],
                        help='Keep telemetry local; do not push to the collector')
    parser.add_argument('--log-level', type=str, default=config["LOG_LEVEL"], help='Local log level')

    # Traffic generator
    parser.add_argument('--no-simulator', action='store_true', default=not config["SIMULATOR_ENABLED"],
                        help='Serve without starting the traffic workers')
    parser.add_argument('--target-url', type=str, default=config["TARGET_URL"],
                        help='Base URL the traffic workers call (defaults to this service)')
    parser.add_argument('--workers', type=int, default=config["WORKER_COUNT"], help='Number of traffic workers')
    parser.add_argument('--min-delay-ms', type=int, default=config["MIN_DELAY_MS"],
                        help='Minimum pause between requests of one worker')
    parser.add_argument('--max-delay-ms', type=int, default=config["MAX_DELAY_MS"],
                        help='Maximum pause between requests of one worker')
    parser.add_argument('--stagger-ms', type=int, default=config["STAGGER_MS"],
                        help='Start offset between consecutive workers')
    parser.add_argument('--timeout-ms', type=int, default=config["REQUEST_TIMEOUT_MS"], help='Request timeout')
    parser.add_argument('--p-network-failure', type=float, default=config["P_NETWORK_FAILURE"],
                        help='Probability [0-1] that a request is treated as a network failure')
    parser.add_argument('--p-server-error', type=float, default=config["P_SERVER_ERROR"],
                        help='Probability [0-1] that the recorded status is overridden to 500')
    parser.add_argument('--p-client-error', type=float, default=config["P_CLIENT_ERROR"],
                        help='Probability [0-1] that the recorded status is overridden to 400')
    parser.add_argument('--seed', type=int, default=config["SEED"], help='Random seed for reproducible traffic')

    # Sweep mode
    parser.add_argument('--iterations', type=int, default=5, help='Sweep: passes over the endpoint catalogue')
    parser.add_argument('--delay-ms', type=int, default=1000, help='Sweep: pause between passes')

    return parser.parse_args(argv)


def apply_overrides(config, args):
    merged = dict(config)
    for dest, key in ARG_OVERRIDES.items():
        value = getattr(args, dest, None)
        if value is not None:
            merged[key] = value
    merged["EXPORT_ENABLED"] = not args.no_export
    merged["SIMULATOR_ENABLED"] = not args.no_simulator
    return merged


class FatalErrorHook:
    """threading.excepthook replacement: log, then ask the main loop to drain and exit non-zero."""

    def __init__(self, shutdown_requested):
        self.shutdown_requested = shutdown_requested
        self.failed = False

    def __call__(self, hook_args):
        if issubclass(hook_args.exc_type, SystemExit):
            return
        thread_name = hook_args.thread.name if hook_args.thread is not None else "unknown"
        logger.critical(
            "Unhandled exception in thread %s",
            thread_name,
            exc_info=(hook_args.exc_type, hook_args.exc_value, hook_args.exc_traceback),
        )
        self.failed = True
        self.shutdown_requested.set()


def serve(config):
    server_config = ServerConfig.from_config(config)
    telemetry_config = TelemetryConfig.from_config(config)
    traffic_config = TrafficConfig.from_config(config)
    grace_s = server_config.shutdown_grace_ms / 1000.0

    telemetry = Telemetry()
    telemetry.initialize(telemetry_config)

    shutdown_requested = threading.Event()
    fatal_hook = FatalErrorHook(shutdown_requested)
    threading.excepthook = fatal_hook

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown_requested.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        return _run_until_shutdown(telemetry, server_config, telemetry_config, traffic_config,
                                   shutdown_requested, fatal_hook)
    except Exception:
        logger.exception("Unhandled error, flushing telemetry before exit")
        telemetry.shutdown(grace_s)
        raise


def _run_until_shutdown(telemetry, server_config, telemetry_config, traffic_config,
                        shutdown_requested, fatal_hook):
    grace_s = server_config.shutdown_grace_ms / 1000.0
    app = create_app(telemetry, service_version=telemetry_config.service_version)
    server = make_server(server_config.host, server_config.port, app, threaded=True)
    server_thread = threading.Thread(target=server.serve_forever, name="http-server", daemon=True)
    server_thread.start()
    logger.info(f"{telemetry_config.service_name} listening on {server_config.host}:{server_config.port}")

    client = None
    pool = None
    if server_config.simulator_enabled:
        client = HttpClient(traffic_config.target_url, pool_size=traffic_config.worker_count)
        pool = TrafficWorkerPool(telemetry, client, traffic_config)
        pool.start()
    else:
        logger.info("Traffic simulator disabled")

    while not shutdown_requested.wait(0.5):
        pass

    deadline = time.monotonic() + grace_s
    if pool is not None:
        pool.stop()
        if not pool.join(grace_s):
            logger.warning("Traffic workers did not stop within %.1fs", grace_s)
    server.shutdown()
    if client is not None:
        client.close()
    telemetry.shutdown(max(0.0, deadline - time.monotonic()))
    return 1 if fatal_hook.failed else 0


def sweep(config, iterations, delay_ms):
    telemetry_config = TelemetryConfig.from_config(config)
    traffic_config = TrafficConfig.from_config(config)

    telemetry = Telemetry()
    telemetry.initialize(telemetry_config)
    client = HttpClient(traffic_config.target_url)
    try:
        outcomes = simulate_sweep(
            telemetry,
            client,
            iterations=iterations,
            delay_ms=delay_ms,
            fault_injector=FaultInjector.from_config(traffic_config),
            timeout_ms=traffic_config.request_timeout_ms,
        )
        errors = sum(1 for o in outcomes if o.is_error)
        logger.info(f"Sweep complete: {len(outcomes)} requests, {errors} errors recorded")
    finally:
        client.close()
        telemetry.shutdown(ServerConfig.from_config(config).shutdown_grace_ms / 1000.0)
    return 0


def main(argv=None):
    """Main function – parse arguments and run the selected command."""
    config = load_config()
    args = parse_arguments(argv, config)
    config = apply_overrides(config, args)
    configure_logging(config["LOG_LEVEL"], config["LOG_FILE"])

    try:
        if args.command == 'sweep':
            return sweep(config, args.iterations, args.delay_ms)
        return serve(config)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        logger.exception(e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
