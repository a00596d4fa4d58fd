import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, inspect, insert, select

from sandboxguard.telemetry.db import Database, predictions, sandbox_runs, training_data


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'telemetry.db'}")
    yield db
    db.close()


def test_run_migrations_creates_tables(database):
    database.run_migrations()
    names = set(inspect(database.engine).get_table_names())
    assert {"sandbox_runs", "training_data", "predictions"} <= names


def test_run_migrations_is_repeatable(database):
    database.run_migrations()
    database.run_migrations()
    assert "predictions" in inspect(database.engine).get_table_names()


def test_ping_succeeds_on_reachable_database(database):
    assert database.ping() is True


def test_ping_fails_when_database_cannot_open(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'missing' / 'nested' / 'telemetry.db'}")
    assert db.ping() is False


def test_timestamps_come_back_in_utc(database):
    database.run_migrations()
    run_id = uuid.uuid4()
    created = datetime(2024, 5, 1, 14, 30, tzinfo=timezone(timedelta(hours=2)))
    with database.engine.begin() as connection:
        connection.execute(
            insert(sandbox_runs).values(
                id=run_id,
                sandbox_id="sb-1",
                provider="e2b",
                language="python",
                exit_code=0,
                duration_ms=1500,
                cost=0.25,
                has_gpu=False,
                success=True,
                created_at=created,
            )
        )
    with database.engine.connect() as connection:
        row = connection.execute(select(sandbox_runs)).mappings().one()
    assert row["id"] == run_id
    assert row["created_at"] == created
    assert row["created_at"].utcoffset() == timedelta(0)
    assert row["cpu_requested"] is None


def test_training_features_round_trip_as_json(database):
    database.run_migrations()
    features = {"language": "python", "cpu": 2, "tags": ["gpu"]}
    with database.engine.begin() as connection:
        connection.execute(
            insert(training_data).values(
                id=uuid.uuid4(),
                features=features,
                actual_cost=1.0,
                actual_latency=2.0,
                success=True,
                provider="e2b",
                created_at=datetime.now(timezone.utc),
            )
        )
    with database.engine.connect() as connection:
        stored = connection.execute(select(training_data.c.features)).scalar_one()
    assert stored == features


def test_naive_timestamp_rejected(database):
    database.run_migrations()
    with pytest.raises(Exception):
        with database.engine.begin() as connection:
            connection.execute(
                insert(predictions).values(
                    id=uuid.uuid4(),
                    provider="e2b",
                    predicted_cost=1.0,
                    predicted_latency=1.0,
                    confidence=0.5,
                    model_version="v1",
                    created_at=datetime(2024, 1, 1),
                )
            )
    with database.engine.connect() as connection:
        count = connection.execute(select(func.count()).select_from(predictions)).scalar_one()
    assert count == 0