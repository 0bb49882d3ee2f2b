"""
Prometheus Metrics

Provides application metrics in Prometheus text format:
- HTTP request metrics (count, duration, status codes)
- Ledger metrics (finalizations, refunds, cancellations)
- Integration metrics (webhooks, side-effect failures)
"""

from typing import Dict, List
from collections import defaultdict
from threading import Lock


class Counter:
    """Simple counter metric."""

    def __init__(self, name: str, description: str, labels: tuple = ()):
        self.name = name
        self.description = description
        self.labels = labels
        self._values: Dict[tuple, float] = defaultdict(float)
        self._lock = Lock()

    def inc(self, value: float = 1, **label_values):
        """Increment counter."""
        key = tuple(label_values.get(l, '') for l in self.labels)
        with self._lock:
            self._values[key] += value

    def get(self, **label_values) -> float:
        key = tuple(label_values.get(l, '') for l in self.labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def get_all(self) -> Dict[tuple, float]:
        """Get all values."""
        with self._lock:
            return dict(self._values)


class Histogram:
    """Simple histogram metric."""

    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf'))

    def __init__(self, name: str, description: str, labels: tuple = (), buckets: tuple = None):
        self.name = name
        self.description = description
        self.labels = labels
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._counts: Dict[tuple, Dict[float, int]] = defaultdict(lambda: defaultdict(int))
        self._sums: Dict[tuple, float] = defaultdict(float)
        self._totals: Dict[tuple, int] = defaultdict(int)
        self._lock = Lock()

    def observe(self, value: float, **label_values):
        """Record an observation."""
        key = tuple(label_values.get(l, '') for l in self.labels)
        with self._lock:
            self._sums[key] += value
            self._totals[key] += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._counts[key][bucket] += 1

    def get_all(self) -> Dict:
        """Get all values."""
        with self._lock:
            return {
                'counts': {k: dict(v) for k, v in self._counts.items()},
                'sums': dict(self._sums),
                'totals': dict(self._totals)
            }


# ================================
# APPLICATION METRICS
# ================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labels=("method", "path", "status_code")
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    labels=("method", "path")
)

finalizations_total = Counter(
    "booking_finalizations_total",
    "Booking finalizations",
    labels=("provider", "result")
)

refunds_total = Counter(
    "refunds_total",
    "Refund legs accepted by the gateway",
    labels=("provider",)
)

refunded_cents_total = Counter(
    "refunded_cents_total",
    "Cents refunded to customers",
    labels=("provider",)
)

cancellations_total = Counter(
    "booking_cancellations_total",
    "Booking cancellations",
    labels=("cancelled_by",)
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook events received",
    labels=("event_type", "status")
)

side_effect_failures_total = Counter(
    "side_effect_failures_total",
    "Best-effort side effects that failed",
    labels=("step",)
)

ledger_violations_total = Counter(
    "ledger_consistency_violations_total",
    "Detected ledger consistency violations"
)

COUNTERS: List[Counter] = [
    http_requests_total,
    finalizations_total,
    refunds_total,
    refunded_cents_total,
    cancellations_total,
    webhook_events_total,
    side_effect_failures_total,
    ledger_violations_total,
]

HISTOGRAMS: List[Histogram] = [
    http_request_duration_seconds,
]


def _label_str(metric, key: tuple) -> str:
    labels = dict(zip(metric.labels, key))
    if not labels:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in labels.items()) + "}"


def format_prometheus_metrics() -> str:
    """Format all metrics in Prometheus text format."""
    lines = []

    for counter in COUNTERS:
        lines.append(f"# HELP {counter.name} {counter.description}")
        lines.append(f"# TYPE {counter.name} counter")
        for key, value in counter.get_all().items():
            lines.append(f"{counter.name}{_label_str(counter, key)} {value}")

    for hist in HISTOGRAMS:
        data = hist.get_all()
        lines.append(f"# HELP {hist.name} {hist.description}")
        lines.append(f"# TYPE {hist.name} histogram")
        for key in data['sums'].keys():
            label_str = _label_str(hist, key)
            lines.append(f"{hist.name}_sum{label_str} {data['sums'][key]}")
            lines.append(f"{hist.name}_count{label_str} {data['totals'][key]}")

    return "\n".join(lines) + "\n"


# ================================
# CONVENIENCE FUNCTIONS
# ================================

def record_http_request(method: str, path: str, status_code: int, duration: float):
    """Record an HTTP request."""
    http_requests_total.inc(method=method, path=path, status_code=str(status_code))
    http_request_duration_seconds.observe(duration, method=method, path=path)


def record_finalization(provider: str, duplicate: bool):
    finalizations_total.inc(provider=provider, result="duplicate" if duplicate else "finalized")


def record_refund(provider: str, granted_cents: int):
    refunds_total.inc(provider=provider)
    refunded_cents_total.inc(granted_cents, provider=provider)


def record_cancellation(cancelled_by: str):
    cancellations_total.inc(cancelled_by=cancelled_by)


def record_webhook_event(event_type: str, status: str):
    webhook_events_total.inc(event_type=event_type, status=status)


def record_side_effect_failure(step: str):
    side_effect_failures_total.inc(step=step)


def record_ledger_violation():
    ledger_violations_total.inc()
