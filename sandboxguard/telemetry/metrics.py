"""Prometheus metrics of the telemetry collector."""

from __future__ import annotations

from sandboxguard.exposition import CounterVec, HistogramVec, Registry


class Metrics:
    """Counters and histograms for sandbox runs, predictions and API requests."""

    def __init__(self) -> None:
        self._registry = Registry()

        self.sandbox_runs_total = CounterVec(
            "sandbox_runs_total",
            "Total number of sandbox runs",
            ["provider", "language", "success"],
        )
        self.sandbox_run_duration = HistogramVec(
            "sandbox_run_duration_ms",
            "Sandbox run duration in milliseconds",
            ["provider", "language"],
        )
        self.sandbox_run_cost = HistogramVec(
            "sandbox_run_cost", "Sandbox run cost", ["provider"]
        )
        self.predictions_total = CounterVec(
            "predictions_total",
            "Total number of predictions made",
            ["model_version", "provider"],
        )
        # metric_type is either "cost" or "latency".
        self.prediction_errors = HistogramVec(
            "prediction_error_percentage",
            "Prediction error percentage",
            ["model_version", "metric_type"],
        )
        self.api_requests_total = CounterVec(
            "api_requests_total",
            "Total number of API requests",
            ["endpoint", "method", "status"],
        )
        self.api_request_duration = HistogramVec(
            "api_request_duration_seconds",
            "API request duration in seconds",
            ["endpoint", "method"],
        )

        for metric in (
            self.sandbox_runs_total,
            self.sandbox_run_duration,
            self.sandbox_run_cost,
            self.predictions_total,
            self.prediction_errors,
            self.api_requests_total,
            self.api_request_duration,
        ):
            self._registry.register(metric)

    def export(self) -> str:
        """Render all metrics in the Prometheus text format."""
        return self._registry.export()