"""Tracking of sandboxes placed in quarantine."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from sandboxguard.security.models import QuarantineRecord, SecurityEvent


def _now() -> datetime:
    return datetime.now(timezone.utc)


class QuarantineManager:
    """Keeps quarantine records by id; a record is active until released."""

    def __init__(self) -> None:
        self._records: dict[str, QuarantineRecord] = {}

    def quarantine(
        self, sandbox_id: str, reason: str, triggering_event: SecurityEvent
    ) -> QuarantineRecord:
        """Open a new quarantine for ``sandbox_id`` and return its record."""
        record = QuarantineRecord(
            id=str(uuid.uuid4()),
            sandbox_id=sandbox_id,
            reason=reason,
            triggered_by=triggering_event.model_copy(deep=True),
            start_time=_now(),
            end_time=None,
            auto_release=False,
            release_conditions=None,
        )
        self._records[record.id] = record
        return record.model_copy(deep=True)

    def release(self, quarantine_id: str) -> None:
        """End a quarantine; releasing an unknown id does nothing."""
        record = self._records.get(quarantine_id)
        if record is not None:
            record.end_time = _now()

    def is_quarantined(self, sandbox_id: str) -> bool:
        return any(
            record.sandbox_id == sandbox_id and record.end_time is None
            for record in self._records.values()
        )

    def list_active(self) -> list[QuarantineRecord]:
        return [
            record.model_copy(deep=True)
            for record in self._records.values()
            if record.end_time is None
        ]

    def get_record(self, quarantine_id: str) -> QuarantineRecord | None:
        record = self._records.get(quarantine_id)
        return None if record is None else record.model_copy(deep=True)

    def cleanup_old_records(self, retention_hours: int) -> int:
        """Drop released records that ended before the retention period; return how many."""
        cutoff = _now() - timedelta(hours=retention_hours)
        expired = [
            record_id
            for record_id, record in self._records.items()
            if record.end_time is not None and record.end_time < cutoff
        ]
        for record_id in expired:
            del self._records[record_id]
        return len(expired)