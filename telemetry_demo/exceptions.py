"""Error taxonomy for the telemetry pipeline and the traffic generator."""


class TelemetryError(Exception):
    """Base class for telemetry lifecycle errors."""


class AlreadyInitialized(TelemetryError):
    """Raised when initialize() is called twice without shutdown() in between."""


class ExportFailure(TelemetryError):
    """The collector could not be reached while exporting a batch."""


class TransportFailure(Exception):
    """The outbound call never completed (timeout, connection error, ...)."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class SimulatedNetworkFailure(TransportFailure):
    """Injected failure: the request is treated as never reaching the service."""

    def __init__(self, message="Simulated network failure"):
        super().__init__(message)
