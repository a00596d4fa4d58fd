"""Security event metrics for the dashboard and for Prometheus scraping."""

from __future__ import annotations

import logging
import math
import threading
import time

from sandboxguard.exposition import Counter, Gauge, Histogram, Registry
from sandboxguard.security.models import DashboardMetrics, RealtimeMetrics, SecurityEvent

logger = logging.getLogger(__name__)

_RESPONSE_TIME_BUCKETS = (0.001, 0.01, 0.1, 1.0, 10.0)


def _as_count(value: float) -> int:
    if not math.isfinite(value) or value < 0:
        return 0
    return int(value)


class MetricsCollector:
    """Counts events, violations and response times, and summarises them."""

    def __init__(self) -> None:
        self._registry = Registry()
        self._events_total = Counter(
            "security_events_total", "Total number of security events processed"
        )
        self._quarantined = Gauge(
            "quarantined_sandboxes", "Number of currently quarantined sandboxes"
        )
        self._active_monitors = Gauge("active_monitors", "Number of active sandbox monitors")
        self._policy_violations = Counter(
            "policy_violations_total", "Total number of policy violations"
        )
        self._response_time = Histogram(
            "security_response_time_seconds",
            "Time taken to process security events",
            buckets=_RESPONSE_TIME_BUCKETS,
        )
        self._process_cpu = Gauge(
            "security_monitor_process_cpu_seconds", "CPU time consumed by the monitor process"
        )
        for metric in (
            self._events_total,
            self._quarantined,
            self._active_monitors,
            self._policy_violations,
            self._response_time,
            self._process_cpu,
        ):
            self._registry.register(metric)
        self._by_type: dict[str, Counter] = {}
        self._by_severity: dict[str, Counter] = {}
        self._lock = threading.Lock()

    def _bump(self, counters: dict[str, Counter], key: str, name: str, help: str) -> None:
        with self._lock:
            counter = counters.get(key)
            if counter is None:
                try:
                    counter = Counter(name, help)
                    self._registry.register(counter)
                except ValueError as exc:
                    logger.warning("Cannot track metric %s: %s", name, exc)
                    return
                counters[key] = counter
        counter.inc()

    def record_event(self, event: SecurityEvent) -> None:
        """Count an event in the total and by its type and severity."""
        self._events_total.inc()
        self._bump(
            self._by_type,
            event.event_type,
            f"security_events_by_type_{event.event_type}",
            f"Number of {event.event_type} events",
        )
        self._bump(
            self._by_severity,
            event.severity,
            f"security_events_by_severity_{event.severity}",
            f"Number of {event.severity} severity events",
        )

    def record_policy_violation(self) -> None:
        self._policy_violations.inc()

    def record_response_time(self, duration: float) -> None:
        """Record the time, in seconds, taken to handle one event."""
        self._response_time.observe(duration)

    def set_quarantined_count(self, count: float) -> None:
        self._quarantined.set(count)

    def set_active_monitors(self, count: float) -> None:
        self._active_monitors.set(count)

    def get_dashboard_metrics(
        self, time_range: str | None = None, granularity: str | None = None
    ) -> DashboardMetrics:
        """Summarise everything counted so far; the range arguments are accepted but unused."""
        with self._lock:
            by_type = {key: _as_count(c.get()) for key, c in self._by_type.items()}
            by_severity = {key: _as_count(c.get()) for key, c in self._by_severity.items()}

        count = self._response_time.sample_count
        avg_ms = (
            self._response_time.sample_sum * 1000.0 / count if count else math.nan
        )
        total = self._events_total.get()
        quarantined = _as_count(self._quarantined.get())
        active = _as_count(self._active_monitors.get())

        return DashboardMetrics(
            total_events=_as_count(total),
            events_by_type=by_type,
            events_by_severity=by_severity,
            quarantined_sandboxes=quarantined,
            policy_violations=_as_count(self._policy_violations.get()),
            compliance_score=self._compliance_score(),
            avg_response_time_ms=avg_ms,
            active_monitors=active,
            realtime_metrics=RealtimeMetrics(
                events_per_second=total / 60.0,
                active_sandboxes=active,
                quarantined_sandboxes=quarantined,
                critical_events=by_severity.get("critical", 0),
            ),
        )

    def collect_system_metrics(self) -> None:
        """Sample host-side figures for the monitor process."""
        self._process_cpu.set(time.process_time())

    def export_prometheus(self) -> str:
        return self._registry.export()

    def _compliance_score(self) -> float:
        total = self._events_total.get()
        if total == 0:
            return 100.0
        violation_rate = self._policy_violations.get() / total
        return max(100.0 - violation_rate * 100.0, 0.0)