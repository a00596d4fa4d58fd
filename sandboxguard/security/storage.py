"""Persistent storage of security events, quarantine records and alerts."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.types import TypeDecorator

from sandboxguard.security.models import (
    Alert,
    AlertQuery,
    EventQuery,
    QuarantineRecord,
    SecurityEvent,
)

logger = logging.getLogger(__name__)


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

security_events = Table(
    "security_events",
    schema,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("severity", String, nullable=False),
    Column("timestamp", _UtcDateTime, nullable=False, index=True),
    Column("sandbox_id", String, nullable=False, index=True),
    Column("provider", String, nullable=False),
    Column("message", Text, nullable=False),
    Column("details", JSON(none_as_null=True)),
    Column("metadata", JSON(none_as_null=True)),
    Column("falco_rule", String),
    Column("ebpf_trace", String),
)

quarantine_records = Table(
    "quarantine_records",
    schema,
    Column("id", String, primary_key=True),
    Column("sandbox_id", String, nullable=False),
    Column("reason", Text, nullable=False),
    Column("triggered_by", JSON, nullable=False),
    Column("start_time", _UtcDateTime, nullable=False),
    Column("end_time", _UtcDateTime),
    Column("auto_release", Boolean, nullable=False),
    Column("release_conditions", JSON(none_as_null=True)),
)

alerts = Table(
    "alerts",
    schema,
    Column("id", String, primary_key=True),
    Column("severity", String, nullable=False),
    Column("message", Text, nullable=False),
    Column("timestamp", _UtcDateTime, nullable=False),
    Column("sandbox_id", String),
    Column("acknowledged", Boolean, nullable=False, default=False),
)


class EventStore:
    """Reads and writes security data through a SQLAlchemy engine."""

    def __init__(self, database: str | Engine) -> None:
        self._engine = create_engine(database) if isinstance(database, str) else database

    @property
    def engine(self) -> Engine:
        return self._engine

    def close(self) -> None:
        self._engine.dispose()

    def run_migrations(self) -> None:
        """Create any missing tables."""
        schema.create_all(self._engine)

    def store_event(self, event: SecurityEvent) -> str:
        """Insert the event under a freshly generated id and return that id."""
        event_id = str(uuid.uuid4())
        values = event.model_dump(mode="python")
        values["id"] = event_id
        with self._engine.begin() as connection:
            connection.execute(insert(security_events).values(**values))
        return event_id

    def list_events(self, query: EventQuery) -> list[SecurityEvent]:
        """Return matching events, newest first, paged by ``limit`` and ``offset``."""
        table = security_events
        statement = select(table)
        if query.sandbox_id is not None:
            statement = statement.where(table.c.sandbox_id == query.sandbox_id)
        if query.event_type is not None:
            statement = statement.where(table.c.event_type == query.event_type)
        if query.severity is not None:
            statement = statement.where(table.c.severity == query.severity)
        if query.start_time is not None:
            statement = statement.where(table.c.timestamp >= query.start_time)
        if query.end_time is not None:
            statement = statement.where(table.c.timestamp <= query.end_time)
        statement = statement.order_by(table.c.timestamp.desc())
        if query.limit is not None:
            statement = statement.limit(query.limit)
        if query.offset is not None:
            statement = statement.offset(query.offset)

        with self._engine.connect() as connection:
            rows = connection.execute(statement).mappings().all()
        return [SecurityEvent.model_validate(dict(row)) for row in rows]

    def store_quarantine(self, record: QuarantineRecord) -> None:
        with self._engine.begin() as connection:
            connection.execute(
                insert(quarantine_records).values(
                    id=record.id,
                    sandbox_id=record.sandbox_id,
                    reason=record.reason,
                    triggered_by=record.triggered_by.model_dump(mode="json"),
                    start_time=record.start_time,
                    end_time=record.end_time,
                    auto_release=record.auto_release,
                    release_conditions=record.release_conditions,
                )
            )

    def update_quarantine_end_time(self, quarantine_id: str, end_time: datetime) -> None:
        with self._engine.begin() as connection:
            connection.execute(
                update(quarantine_records)
                .where(quarantine_records.c.id == quarantine_id)
                .values(end_time=end_time)
            )

    def list_quarantines(self, active_only: bool) -> list[QuarantineRecord]:
        """Return quarantine records, newest first; only unreleased ones if ``active_only``."""
        statement = select(quarantine_records)
        if active_only:
            statement = statement.where(quarantine_records.c.end_time.is_(None))
        statement = statement.order_by(quarantine_records.c.start_time.desc())
        with self._engine.connect() as connection:
            rows = connection.execute(statement).mappings().all()
        return [QuarantineRecord.model_validate(dict(row)) for row in rows]

    def store_alert(self, alert: Alert) -> None:
        with self._engine.begin() as connection:
            connection.execute(insert(alerts).values(**alert.model_dump(mode="python")))

    def list_alerts(self, query: AlertQuery) -> list[Alert]:
        """Return matching alerts, newest first."""
        statement = select(alerts)
        if query.acknowledged is not None:
            statement = statement.where(alerts.c.acknowledged == query.acknowledged)
        if query.severity is not None:
            statement = statement.where(alerts.c.severity == query.severity)
        statement = statement.order_by(alerts.c.timestamp.desc())
        if query.limit is not None:
            statement = statement.limit(query.limit)
        with self._engine.connect() as connection:
            rows = connection.execute(statement).mappings().all()
        return [Alert.model_validate(dict(row)) for row in rows]

    def acknowledge_alert(self, alert_id: str) -> None:
        with self._engine.begin() as connection:
            connection.execute(
                update(alerts).where(alerts.c.id == alert_id).values(acknowledged=True)
            )

    def aggregate_old_events(self) -> int:
        """Roll up old events; nothing is rolled up yet, so this reports zero."""
        return 0

    def cleanup_old_events(self, retention_days: int) -> int:
        """Delete events older than ``retention_days`` and return how many went."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        with self._engine.begin() as connection:
            result = connection.execute(
                delete(security_events).where(security_events.c.timestamp < cutoff)
            )
        return result.rowcount or 0