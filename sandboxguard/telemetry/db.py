"""Database connection and schema of the telemetry collector."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Uuid,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)

_MAX_CONNECTIONS = 5


class _UtcDateTime(TypeDecorator):
    """Stores aware datetimes as naive UTC and hands them back as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("timestamps must carry a time zone")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


schema = MetaData()

sandbox_runs = Table(
    "sandbox_runs",
    schema,
    Column("id", Uuid, primary_key=True),
    Column("sandbox_id", String, nullable=False),
    Column("provider", String, nullable=False, index=True),
    Column("language", String, nullable=False),
    Column("exit_code", Integer, nullable=False),
    Column("duration_ms", BigInteger, nullable=False),
    Column("cost", Float, nullable=False),
    Column("cpu_requested", Float),
    Column("memory_requested", Integer),
    Column("has_gpu", Boolean, nullable=False),
    Column("timeout_ms", BigInteger),
    Column("success", Boolean, nullable=False),
    Column("created_at", _UtcDateTime, nullable=False, index=True),
)

training_data = Table(
    "training_data",
    schema,
    Column("id", Uuid, primary_key=True),
    Column("features", JSON, nullable=False),
    Column("actual_cost", Float, nullable=False),
    Column("actual_latency", Float, nullable=False),
    Column("success", Boolean, nullable=False),
    Column("provider", String, nullable=False),
    Column("created_at", _UtcDateTime, nullable=False, index=True),
)

predictions = Table(
    "predictions",
    schema,
    Column("id", Uuid, primary_key=True),
    Column("provider", String, nullable=False),
    Column("predicted_cost", Float, nullable=False),
    Column("predicted_latency", Float, nullable=False),
    Column("confidence", Float, nullable=False),
    Column("model_version", String, nullable=False, index=True),
    Column("actual_cost", Float),
    Column("actual_latency", Float),
    Column("actual_success", Boolean),
    Column("created_at", _UtcDateTime, nullable=False, index=True),
)


class Database:
    """A pooled connection to the telemetry database."""

    def __init__(self, database: str | Engine, max_connections: int = _MAX_CONNECTIONS) -> None:
        if isinstance(database, str):
            self._engine = create_engine(database, pool_size=max_connections)
        else:
            self._engine = database

    @property
    def engine(self) -> Engine:
        return self._engine

    def close(self) -> None:
        self._engine.dispose()

    def run_migrations(self) -> None:
        """Create any missing telemetry tables."""
        schema.create_all(self._engine)
        logger.info("Database migrations completed")

    def ping(self) -> bool:
        """Return whether the database answers a trivial query."""
        try:
            with self._engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.warning("Database ping failed: %s", exc)
            return False
        return True