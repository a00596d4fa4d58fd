"""Recording and querying of sandbox runs, training data and model predictions."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Float, case, cast, func, insert, select
from sqlalchemy.exc import SQLAlchemyError

from sandboxguard.telemetry.db import Database, predictions, sandbox_runs, training_data
from sandboxguard.telemetry.errors import DatabaseError
from sandboxguard.telemetry.metrics import Metrics
from sandboxguard.telemetry.models import (
    ModelPerformance,
    Prediction,
    PredictionRequest,
    ProviderStats,
    SandboxRun,
    SandboxRunRequest,
    TimeRange,
    TrainingData,
    TrainingDataRequest,
)

logger = logging.getLogger(__name__)

DEFAULT_TRAINING_DATA_LIMIT = 1000
MAX_TRAINING_DATA_LIMIT = 10000
MAX_ERROR_PERCENTAGE = 100.0

_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1


def _now() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _storage_errors() -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise DatabaseError(exc) from exc


def _field(document: Any, key: str) -> Any:
    return document.get(key) if isinstance(document, dict) else None


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if _I64_MIN <= value <= _I64_MAX else None


def _error_percentage(actual: float, predicted: float) -> float:
    """Relative error in percent, capped; a zero actual value counts as the cap."""
    if actual == 0:
        return MAX_ERROR_PERCENTAGE
    return min(abs(actual - predicted) / actual * 100.0, MAX_ERROR_PERCENTAGE)


class TelemetryService:
    """Stores telemetry in the database and keeps the Prometheus metrics current."""

    def __init__(self, database: Database, metrics: Metrics) -> None:
        self.database = database
        self.metrics = metrics

    def track_sandbox_run(self, request: SandboxRunRequest) -> SandboxRun:
        """Record a finished run; it counts as a success when its exit code is zero."""
        run = SandboxRun(
            id=uuid.uuid4(),
            sandbox_id=request.sandbox_id,
            provider=request.provider,
            language=request.language,
            exit_code=request.exit_code,
            duration_ms=request.duration_ms,
            cost=request.cost,
            cpu_requested=request.cpu_requested,
            memory_requested=request.memory_requested,
            has_gpu=request.has_gpu,
            timeout_ms=request.timeout_ms,
            success=request.exit_code == 0,
            created_at=_now(),
        )

        self.metrics.sandbox_runs_total.with_label_values(
            run.provider, run.language, str(run.success).lower()
        ).inc()
        self.metrics.sandbox_run_duration.with_label_values(
            run.provider, run.language
        ).observe(float(run.duration_ms))
        self.metrics.sandbox_run_cost.with_label_values(run.provider).observe(run.cost)

        with _storage_errors(), self.database.engine.begin() as connection:
            connection.execute(insert(sandbox_runs).values(**run.model_dump(mode="python")))
        return run

    def get_training_data(
        self, start: datetime, limit: int | None = None
    ) -> list[TrainingData]:
        """Return training data created at or after ``start``, newest first."""
        limit = min(DEFAULT_TRAINING_DATA_LIMIT if limit is None else limit,
                    MAX_TRAINING_DATA_LIMIT)
        if limit < 0:
            raise DatabaseError("LIMIT must not be negative")
        statement = (
            select(training_data)
            .where(training_data.c.created_at >= start)
            .order_by(training_data.c.created_at.desc())
            .limit(limit)
        )
        with _storage_errors(), self.database.engine.connect() as connection:
            rows = connection.execute(statement).mappings().all()
        return [TrainingData.model_validate(dict(row)) for row in rows]

    def submit_training_data(self, request: TrainingDataRequest) -> TrainingData:
        """Store the outcome described by a sandbox result together with its features."""
        result = request.sandbox_result
        provider = _as_str(_field(result, "provider"))
        cost = _as_float(_field(result, "cost"))
        latency = _as_float(_field(result, "duration"))
        exit_code = _as_int(_field(result, "exitCode"))

        record = TrainingData(
            id=uuid.uuid4(),
            features=request.features,
            actual_cost=0.0 if cost is None else cost,
            actual_latency=0.0 if latency is None else latency,
            success=(-1 if exit_code is None else exit_code) == 0,
            provider="unknown" if provider is None else provider,
            created_at=request.timestamp,
        )
        with _storage_errors(), self.database.engine.begin() as connection:
            connection.execute(
                insert(training_data).values(**record.model_dump(mode="python"))
            )
        return record

    def get_provider_stats(self, provider: str, time_range: TimeRange) -> ProviderStats:
        """Averages over a provider's runs in the window; an open end means now."""
        end = time_range.end or _now()
        table = sandbox_runs
        statement = (
            select(
                cast(func.avg(table.c.duration_ms), Float).label("avg_latency"),
                cast(func.avg(table.c.cost), Float).label("avg_cost"),
                cast(
                    func.avg(case((table.c.success, 1.0), else_=0.0)), Float
                ).label("success_rate"),
                func.count().label("total_runs"),
            )
            .select_from(table)
            .where(
                table.c.provider == provider,
                table.c.created_at >= time_range.start,
                table.c.created_at <= end,
            )
        )
        with _storage_errors(), self.database.engine.connect() as connection:
            row = connection.execute(statement).one()._mapping
        return ProviderStats(
            avg_latency=row["avg_latency"] or 0.0,
            avg_cost=row["avg_cost"] or 0.0,
            success_rate=row["success_rate"] or 0.0,
            total_runs=row["total_runs"] or 0,
        )

    def track_prediction(self, request: PredictionRequest) -> Prediction:
        """Record a prediction and, when the actual outcome is known, its errors."""
        data = request.prediction
        actual = request.actual
        prediction = Prediction(
            id=uuid.uuid4(),
            provider=data.provider,
            predicted_cost=data.predicted_cost,
            predicted_latency=data.predicted_latency,
            confidence=data.confidence,
            model_version=data.model_version,
            actual_cost=None if actual is None else actual.cost,
            actual_latency=None if actual is None else actual.latency,
            actual_success=None if actual is None else actual.success,
            created_at=request.timestamp,
        )

        self.metrics.predictions_total.with_label_values(
            prediction.model_version, prediction.provider
        ).inc()
        if actual is not None:
            self.metrics.prediction_errors.with_label_values(
                prediction.model_version, "cost"
            ).observe(_error_percentage(actual.cost, prediction.predicted_cost))
            self.metrics.prediction_errors.with_label_values(
                prediction.model_version, "latency"
            ).observe(_error_percentage(actual.latency, prediction.predicted_latency))

        with _storage_errors(), self.database.engine.begin() as connection:
            connection.execute(
                insert(predictions).values(**prediction.model_dump(mode="python"))
            )
        return prediction

    def get_model_performance(
        self, version: str, time_range: TimeRange
    ) -> ModelPerformance:
        """Error averages over a model version's predictions whose outcome is known."""
        end = time_range.end or _now()
        table = predictions
        statement = (
            select(
                func.count().label("total_predictions"),
                cast(
                    func.avg(func.abs(table.c.actual_cost - table.c.predicted_cost)), Float
                ).label("avg_cost_error"),
                cast(
                    func.avg(func.abs(table.c.actual_latency - table.c.predicted_latency)),
                    Float,
                ).label("avg_latency_error"),
                cast(
                    func.avg(case((table.c.actual_success.is_not(None), 1.0), else_=0.0)),
                    Float,
                ).label("provider_accuracy"),
            )
            .select_from(table)
            .where(
                table.c.model_version == version,
                table.c.created_at >= time_range.start,
                table.c.created_at <= end,
                table.c.actual_cost.is_not(None),
                table.c.actual_latency.is_not(None),
            )
        )
        with _storage_errors(), self.database.engine.connect() as connection:
            row = connection.execute(statement).one()._mapping
        return ModelPerformance(
            total_predictions=row["total_predictions"] or 0,
            avg_cost_error=row["avg_cost_error"] or 0.0,
            avg_latency_error=row["avg_latency_error"] or 0.0,
            provider_accuracy=row["provider_accuracy"] or 0.0,
        )