"""Prometheus metrics instrumentation for notification delivery."""

from functools import lru_cache

from prometheus_client import Counter, Gauge
from prometheus_fastapi_instrumentator import Instrumentator, metrics

# Breaker state encoded as a gauge value
BREAKER_STATE_VALUES = {
    "closed": 0,
    "half_open": 1,
    "open": 2,
}

# Tracked delivery outcomes
delivery_attempts_total = Counter(
    "notify_delivery_attempts_total",
    "Total number of delivery attempt outcomes tracked",
    ["channel", "status"],
)

# Retries armed by the scheduler
retries_scheduled_total = Counter(
    "notify_delivery_retries_scheduled_total",
    "Total number of delivery retries scheduled",
    ["channel"],
)

# Circuit breaker state per channel
circuit_breaker_state = Gauge(
    "notify_delivery_circuit_breaker_state",
    "Circuit breaker state per channel (0=closed, 1=half-open, 2=open)",
    ["channel"],
)

# Outstanding scheduled retries
retry_queue_size = Gauge(
    "notify_delivery_retry_queue_size",
    "Number of delivery retries currently scheduled",
)


@lru_cache
def _http_metrics():
    # Collectors live in the global registry, so every app shares one set
    return metrics.default()


def setup_metrics(app) -> Instrumentator:
    """Set up Prometheus metrics instrumentation for FastAPI app."""
    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        excluded_handlers=["/health", "/metrics"],
    )
    instrumentator.add(_http_metrics())
    instrumentator.instrument(app)
    return instrumentator


def expose_metrics(app, instrumentator: Instrumentator) -> None:
    """Expose the /metrics endpoint."""
    instrumentator.expose(app, include_in_schema=False, should_gzip=True)


# Helper functions for updating custom metrics


def record_attempt(channel: str, status: str) -> None:
    """Increment tracked attempt counter."""
    delivery_attempts_total.labels(channel=channel, status=status).inc()


def record_retry_scheduled(channel: str) -> None:
    """Increment scheduled retry counter."""
    retries_scheduled_total.labels(channel=channel).inc()


def set_circuit_breaker_state(channel: str, state: str) -> None:
    """Set the breaker state gauge for a channel."""
    circuit_breaker_state.labels(channel=channel).set(BREAKER_STATE_VALUES.get(state, 0))


def set_retry_queue_size(size: int) -> None:
    """Set number of outstanding scheduled retries."""
    retry_queue_size.set(size)
