"""
Fault injection for synthetic traffic.

Two independent decisions are made per attempt: whether the request is
treated as a network failure (it is never sent), and, for requests that did
get a response, whether the status recorded into telemetry is replaced by a
noisy 500 or 400. The real response is never modified.
"""
import random
from typing import Optional

from .exceptions import SimulatedNetworkFailure

DEFAULT_TRANSPORT_STATUS = 500


def _clamp_probability(value) -> float:
    return max(0.0, min(1.0, float(value)))


def transport_status(error: BaseException) -> int:
    """Status to record for a call that never completed."""
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    try:
        status = int(status)
    except (TypeError, ValueError):
        return DEFAULT_TRANSPORT_STATUS
    if 100 <= status <= 599:
        return status
    return DEFAULT_TRANSPORT_STATUS


class FaultInjector:
    def __init__(self, p_network_failure: float = 0.05, p_server_error: float = 0.10,
                 p_client_error: float = 0.10, rng: Optional[random.Random] = None):
        self.p_network_failure = _clamp_probability(p_network_failure)
        self.p_server_error = _clamp_probability(p_server_error)
        self.p_client_error = _clamp_probability(p_client_error)
        self.rng = rng or random.Random()

    @classmethod
    def disabled(cls):
        return cls(0.0, 0.0, 0.0)

    @classmethod
    def from_config(cls, traffic_config, rng: Optional[random.Random] = None):
        return cls(
            p_network_failure=traffic_config.p_network_failure,
            p_server_error=traffic_config.p_server_error,
            p_client_error=traffic_config.p_client_error,
            rng=rng,
        )

    def network_failure(self) -> bool:
        return self.rng.random() < self.p_network_failure

    def maybe_fail_network(self) -> None:
        if self.network_failure():
            raise SimulatedNetworkFailure()

    def override_status(self, real_status: int) -> int:
        rnd = self.rng.random()
        if rnd < self.p_server_error:
            return 500
        if rnd < self.p_server_error + self.p_client_error:
            return 400
        return real_status
