import os
from dataclasses import dataclass
from typing import Optional


def _coerce_bool(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


CONFIG_SCHEMA = {
    "SERVICE_NAME": ("demo-app", str),
    "SERVICE_VERSION": ("1.0.0", str),
    "HOST": ("0.0.0.0", str),
    "PORT": (3000, int),
    "COLLECTOR_URL": ("http://localhost:9091", str),
    "LOG_ENDPOINT": ("", str),
    "TRACE_ENDPOINT": ("", str),
    "TRACES_ENABLED": (True, _coerce_bool),
    "EXPORT_INTERVAL_MS": (5000, int),
    "EXPORT_ENABLED": (True, _coerce_bool),
    "LOG_QUEUE_SIZE": (2048, int),
    "LOG_BATCH_SIZE": (512, int),
    "SIMULATOR_ENABLED": (True, _coerce_bool),
    "TARGET_URL": ("", str),
    "WORKER_COUNT": (5, int),
    "MIN_DELAY_MS": (500, int),
    "MAX_DELAY_MS": (3000, int),
    "STAGGER_MS": (200, int),
    "REQUEST_TIMEOUT_MS": (5000, int),
    "P_NETWORK_FAILURE": (0.05, float),
    "P_SERVER_ERROR": (0.10, float),
    "P_CLIENT_ERROR": (0.10, float),
    "SHUTDOWN_GRACE_MS": (10000, int),
    "LOG_LEVEL": ("INFO", str),
    "LOG_FILE": ("", str),
    "SEED": (None, int),
}


def _cast_value(raw_value, caster, default):
    try:
        return caster(raw_value)
    except (TypeError, ValueError):
        return default


def load_config(environ=None):
    """Read every CONFIG_SCHEMA key from the environment, falling back to defaults."""
    environ = os.environ if environ is None else environ
    config = {}
    for key, (default, caster) in CONFIG_SCHEMA.items():
        raw = environ.get(key)
        if raw is None or raw == "":
            config[key] = default
        else:
            config[key] = _cast_value(raw, caster, default)
    return config


@dataclass(frozen=True)
class TelemetryConfig:
    service_name: str = "demo-app"
    service_version: str = "1.0.0"
    metrics_gateway: str = "http://localhost:9091"
    log_endpoint: str = "http://localhost:9091/v1/logs"
    trace_endpoint: str = "http://localhost:9091/v1/traces"
    traces_enabled: bool = True
    export_interval_ms: int = 5000
    export_enabled: bool = True
    log_queue_size: int = 2048
    log_batch_size: int = 512

    @classmethod
    def from_config(cls, config):
        collector = config["COLLECTOR_URL"].rstrip("/")
        return cls(
            service_name=config["SERVICE_NAME"],
            service_version=config["SERVICE_VERSION"],
            metrics_gateway=collector,
            log_endpoint=config["LOG_ENDPOINT"] or f"{collector}/v1/logs",
            trace_endpoint=config["TRACE_ENDPOINT"] or f"{collector}/v1/traces",
            traces_enabled=config["TRACES_ENABLED"],
            export_interval_ms=max(1, config["EXPORT_INTERVAL_MS"]),
            export_enabled=config["EXPORT_ENABLED"],
            log_queue_size=max(1, config["LOG_QUEUE_SIZE"]),
            log_batch_size=max(1, config["LOG_BATCH_SIZE"]),
        )


@dataclass(frozen=True)
class TrafficConfig:
    target_url: str = "http://localhost:3000"
    worker_count: int = 5
    min_delay_ms: int = 500
    max_delay_ms: int = 3000
    stagger_ms: int = 200
    request_timeout_ms: int = 5000
    p_network_failure: float = 0.05
    p_server_error: float = 0.10
    p_client_error: float = 0.10
    seed: Optional[int] = None

    @classmethod
    def from_config(cls, config):
        min_delay = max(0, config["MIN_DELAY_MS"])
        return cls(
            target_url=(config["TARGET_URL"] or f"http://localhost:{config['PORT']}").rstrip("/"),
            worker_count=max(1, config["WORKER_COUNT"]),
            min_delay_ms=min_delay,
            max_delay_ms=max(min_delay, config["MAX_DELAY_MS"]),
            stagger_ms=max(0, config["STAGGER_MS"]),
            request_timeout_ms=max(1, config["REQUEST_TIMEOUT_MS"]),
            p_network_failure=config["P_NETWORK_FAILURE"],
            p_server_error=config["P_SERVER_ERROR"],
            p_client_error=config["P_CLIENT_ERROR"],
            seed=config["SEED"],
        )


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    simulator_enabled: bool = True
    shutdown_grace_ms: int = 10000
    log_level: str = "INFO"
    log_file: str = ""

    @classmethod
    def from_config(cls, config):
        return cls(
            host=config["HOST"],
            port=config["PORT"],
            simulator_enabled=config["SIMULATOR_ENABLED"],
            shutdown_grace_ms=max(0, config["SHUTDOWN_GRACE_MS"]),
            log_level=config["LOG_LEVEL"].upper(),
            log_file=config["LOG_FILE"],
        )
