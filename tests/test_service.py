from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from sandboxguard.telemetry.db import Database
from sandboxguard.telemetry.errors import DatabaseError
from sandboxguard.telemetry.metrics import Metrics
from sandboxguard.telemetry.models import (
    ActualData,
    PredictionData,
    PredictionRequest,
    SandboxRunRequest,
    TimeRange,
    TrainingDataRequest,
)
from sandboxguard.telemetry.service import TelemetryService


def _memory_database():
    engine = create_engine(
        "sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    return Database(engine)


@pytest.fixture
def service():
    database = _memory_database()
    database.run_migrations()
    return TelemetryService(database, Metrics())


def _run_request(exit_code=0, cost=2.5, provider="e2b", duration_ms=1500):
    return SandboxRunRequest(
        sandbox_id="sb-1",
        provider=provider,
        language="python",
        exit_code=exit_code,
        duration_ms=duration_ms,
        cost=cost,
        has_gpu=False,
        spec={},
        result={},
    )


def _prediction_request(actual=None, version="v1"):
    return PredictionRequest(
        prediction=PredictionData(
            provider="e2b",
            predicted_cost=1.0,
            predicted_latency=200.0,
            confidence=0.8,
            model_version=version,
        ),
        actual=actual,
        timestamp=datetime.now(timezone.utc),
    )


def _long_ago():
    return TimeRange(start=datetime.now(timezone.utc) - timedelta(days=1))


def test_run_success_follows_exit_code(service):
    assert service.track_sandbox_run(_run_request(exit_code=0)).success is True
    assert service.track_sandbox_run(_run_request(exit_code=3)).success is False


def test_run_updates_metrics(service):
    service.track_sandbox_run(_run_request(duration_ms=1500))
    counter = service.metrics.sandbox_runs_total.with_label_values("e2b", "python", "true")
    assert counter.get() == 1.0
    duration = service.metrics.sandbox_run_duration.with_label_values("e2b", "python")
    assert duration.sample_count == 1
    assert duration.sample_sum == 1500.0


def test_provider_stats_cover_stored_runs(service):
    service.track_sandbox_run(_run_request(cost=2.5))
    service.track_sandbox_run(_run_request(cost=2.5))
    service.track_sandbox_run(_run_request(provider="other"))
    stats = service.get_provider_stats("e2b", _long_ago())
    assert stats.total_runs == 2
    assert stats.avg_cost == pytest.approx(2.5)
    assert stats.success_rate == pytest.approx(1.0)


def test_provider_stats_empty_window_are_zero(service):
    service.track_sandbox_run(_run_request())
    future = TimeRange(start=datetime.now(timezone.utc) + timedelta(days=1))
    stats = service.get_provider_stats("e2b", future)
    assert (stats.total_runs, stats.avg_cost, stats.avg_latency, stats.success_rate) == (
        0, 0.0, 0.0, 0.0,
    )


def test_training_data_extracts_result_fields(service):
    record = service.submit_training_data(
        TrainingDataRequest(
            sandbox_result={"provider": "modal", "cost": 3, "duration": 420.5, "exitCode": 0},
            features={"language": "python"},
            timestamp=datetime.now(timezone.utc),
        )
    )
    assert record.provider == "modal"
    assert record.actual_cost == 3.0
    assert record.actual_latency == 420.5
    assert record.success is True


def test_training_data_defaults_for_missing_fields(service):
    record = service.submit_training_data(
        TrainingDataRequest(
            sandbox_result="not an object",
            features={},
            timestamp=datetime.now(timezone.utc),
        )
    )
    assert record.provider == "unknown"
    assert record.actual_cost == 0.0
    assert record.success is False


def test_training_data_float_exit_code_is_not_success(service):
    record = service.submit_training_data(
        TrainingDataRequest(
            sandbox_result={"exitCode": 0.0},
            features={},
            timestamp=datetime.now(timezone.utc),
        )
    )
    assert record.success is False


def test_training_data_newest_first_and_filtered(service):
    earlier = datetime(2024, 1, 1, tzinfo=timezone.utc)
    later = earlier + timedelta(hours=1)
    for when in (earlier, later):
        service.submit_training_data(
            TrainingDataRequest(sandbox_result={}, features={"at": when.isoformat()},
                                timestamp=when)
        )
    everything = service.get_training_data(earlier)
    assert [item.created_at for item in everything] == [later, earlier]
    assert [item.created_at for item in service.get_training_data(later)] == [later]
    assert len(service.get_training_data(earlier, limit=1)) == 1


def test_training_data_round_trips_features(service):
    when = datetime(2024, 5, 1, tzinfo=timezone.utc)
    stored = service.submit_training_data(
        TrainingDataRequest(sandbox_result={}, features={"cpu": 2, "gpu": False},
                            timestamp=when)
    )
    [loaded] = service.get_training_data(when)
    assert loaded == stored


def test_negative_limit_is_rejected(service):
    with pytest.raises(DatabaseError):
        service.get_training_data(datetime.now(timezone.utc), limit=-1)


def test_prediction_error_is_capped_at_zero_actual(service):
    service.track_prediction(
        _prediction_request(actual=ActualData(cost=0.0, latency=200.0, success=True))
    )
    cost_errors = service.metrics.prediction_errors.with_label_values("v1", "cost")
    latency_errors = service.metrics.prediction_errors.with_label_values("v1", "latency")
    assert cost_errors.sample_sum == 100.0
    assert latency_errors.sample_sum == 0.0


def test_prediction_without_actual_records_no_error(service):
    prediction = service.track_prediction(_prediction_request())
    assert prediction.actual_cost is None
    assert "prediction_error_percentage" not in service.metrics.export()
    assert service.metrics.predictions_total.with_label_values("v1", "e2b").get() == 1.0


def test_model_performance_counts_resolved_predictions(service):
    service.track_prediction(
        _prediction_request(actual=ActualData(cost=1.5, latency=200.0, success=True))
    )
    service.track_prediction(_prediction_request())
    performance = service.get_model_performance("v1", _long_ago())
    assert performance.total_predictions == 1
    assert performance.avg_cost_error == pytest.approx(0.5)
    assert performance.avg_latency_error == pytest.approx(0.0)
    assert performance.provider_accuracy == pytest.approx(1.0)


def test_model_performance_for_unknown_version_is_zero(service):
    performance = service.get_model_performance("missing", _long_ago())
    assert performance.total_predictions == 0
    assert performance.provider_accuracy == 0.0


def test_missing_tables_raise_database_error():
    service = TelemetryService(_memory_database(), Metrics())
    with pytest.raises(DatabaseError):
        service.track_sandbox_run(_run_request())