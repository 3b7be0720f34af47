"""Prometheus metrics for the speed monitor.

Provides:
- Speed test counters and last-result gauges
- Authentication success/failure counters
- Rate limiter rejection and fallback counters
- Process uptime

The counters live in a ``MonitorMetrics`` instance owned by the application
(``app.state.metrics``) and are safe to update from concurrent requests.
Exposition text is generated directly; no prometheus_client dependency.
"""

import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

MBPS_DIVISOR = 125000  # bytes/s -> Mbps

HELP = {
    "speedtest_runs_total": ("counter", "Total number of speed tests run"),
    "speedtest_errors_total": ("counter", "Total number of speed test errors"),
    "speedtest_consecutive_failures": ("gauge", "Speed test cycles failed in a row"),
    "speedtest_last_download_mbps": ("gauge", "Last download speed in Mbps"),
    "speedtest_last_upload_mbps": ("gauge", "Last upload speed in Mbps"),
    "speedtest_last_latency_ms": ("gauge", "Last latency in milliseconds"),
    "auth_checks_total": ("counter", "Authentication attempts by method and result"),
    "rate_limit_rejections_total": ("counter", "Requests rejected by the rate limiter"),
    "rate_limit_fallback_total": ("counter", "Rate limit decisions served by the in-process store"),
}


def _label_key(name: str, labels: Optional[dict] = None) -> str:
    if not labels:
        return name
    label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
    return f"{name}{{{label_str}}}"


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time copy of all metric values."""
    counters: dict
    gauges: dict
    uptime_seconds: float

    def counter(self, name: str, **labels) -> float:
        return self.counters.get(_label_key(name, labels), 0.0)

    def gauge(self, name: str, **labels) -> float:
        return self.gauges.get(_label_key(name, labels), 0.0)


class MonitorMetrics:
    """Atomically updated counters and gauges."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._start_time = time.monotonic()

    def inc(self, name: str, value: float = 1.0, labels: Optional[dict] = None) -> float:
        key = _label_key(name, labels)
        with self._lock:
            self._counters[key] += value
            return self._counters[key]

    def gauge_set(self, name: str, value: float, labels: Optional[dict] = None) -> None:
        key = _label_key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                counters=dict(self._counters),
                gauges=dict(self._gauges),
                uptime_seconds=time.monotonic() - self._start_time,
            )

    # ─── Domain helpers ────────────────────────────────────

    def record_speedtest_success(self, download_bps: float, upload_bps: float, latency_ms: float) -> None:
        with self._lock:
            self._counters["speedtest_runs_total"] += 1
            self._gauges["speedtest_consecutive_failures"] = 0
            self._gauges["speedtest_last_download_mbps"] = round(download_bps / MBPS_DIVISOR, 2)
            self._gauges["speedtest_last_upload_mbps"] = round(upload_bps / MBPS_DIVISOR, 2)
            self._gauges["speedtest_last_latency_ms"] = round(latency_ms, 2)

    def record_speedtest_failure(self) -> int:
        """Count a failed cycle; returns the number of consecutive failures."""
        with self._lock:
            self._counters["speedtest_errors_total"] += 1
            failures = int(self._gauges.get("speedtest_consecutive_failures", 0)) + 1
            self._gauges["speedtest_consecutive_failures"] = failures
            return failures

    def record_auth(self, method: str, success: bool) -> None:
        self.inc(
            "auth_checks_total",
            labels={"method": method, "result": "success" if success else "failure"},
        )


def generate_metrics(snapshot: MetricsSnapshot) -> str:
    """Generate Prometheus exposition format text."""
    lines: list[str] = []

    for name in HELP:
        metric_type, help_text = HELP[name]
        source = snapshot.counters if metric_type == "counter" else snapshot.gauges
        samples = sorted(
            (key, val) for key, val in source.items() if key.split("{")[0] == name
        )
        if not samples:
            samples = [(name, 0)]
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {metric_type}")
        for key, val in samples:
            lines.append(f"{key} {val}")
        lines.append("")

    lines.append("# HELP process_uptime_seconds Process uptime in seconds")
    lines.append("# TYPE process_uptime_seconds gauge")
    lines.append(f"process_uptime_seconds {snapshot.uptime_seconds:.1f}")

    return "\n".join(lines) + "\n"
