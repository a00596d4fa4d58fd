"""Aggregation and correlation of security events."""

from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone
from operator import attrgetter

from sandboxguard.security.models import (
    AggregationResult,
    CorrelationGroup,
    EventPattern,
    SecurityEvent,
)

_TEMPORAL_WINDOW_MS = 60_000
_ANOMALY_FREQUENCY = 10
_HIGH_SEVERITIES = frozenset({"high", "critical"})

_ATTACK_PATTERNS: tuple[tuple[str, ...], ...] = (
    ("file_access", "process_spawn", "privilege_escalation"),
    ("file_access", "network_activity"),
    ("network_activity", "process_spawn", "network_activity"),
)


class EventAggregator:
    """Finds recurring patterns, anomalies and related groups among events."""

    def aggregate(self, events: Sequence[SecurityEvent], window_ms: int) -> AggregationResult:
        """Summarise ``events``; patterns only count events from the last ``window_ms``."""
        return AggregationResult(
            patterns=self._identify_patterns(events, window_ms),
            anomalies=self._detect_anomalies(events),
            correlation_groups=self._correlate_events(events),
        )

    def _identify_patterns(
        self, events: Iterable[SecurityEvent], window_ms: int
    ) -> list[EventPattern]:
        window_start = datetime.now(timezone.utc) - timedelta(milliseconds=window_ms)
        patterns: dict[tuple[str, str], EventPattern] = {}

        for event in events:
            if event.timestamp < window_start:
                continue
            key = (event.event_type, event.severity)
            pattern = patterns.get(key)
            if pattern is None:
                patterns[key] = EventPattern(
                    event_type=event.event_type,
                    count=1,
                    severity=event.severity,
                    sandboxes=[event.sandbox_id],
                    first_seen=event.timestamp,
                    last_seen=event.timestamp,
                )
                continue
            pattern.count += 1
            if event.sandbox_id not in pattern.sandboxes:
                pattern.sandboxes.append(event.sandbox_id)
            if event.timestamp > pattern.last_seen:
                pattern.last_seen = event.timestamp

        return sorted(patterns.values(), key=attrgetter("count"), reverse=True)

    def _detect_anomalies(self, events: Sequence[SecurityEvent]) -> list[SecurityEvent]:
        counts = Counter((e.event_type, e.sandbox_id) for e in events)
        anomalies = (
            e
            for e in events
            if counts[(e.event_type, e.sandbox_id)] > _ANOMALY_FREQUENCY
            or e.severity == "critical"
        )
        unique: dict[str, SecurityEvent] = {}
        for event in sorted(anomalies, key=attrgetter("id")):
            unique.setdefault(event.id, event)
        return list(unique.values())

    def _correlate_events(self, events: Sequence[SecurityEvent]) -> list[CorrelationGroup]:
        return [
            *self._correlate_by_time(events, _TEMPORAL_WINDOW_MS),
            *self._correlate_by_sandbox(events),
            *self._correlate_attack_patterns(events),
        ]

    @staticmethod
    def _correlate_by_time(
        events: Sequence[SecurityEvent], window_ms: int
    ) -> list[CorrelationGroup]:
        window = timedelta(milliseconds=window_ms)
        groups = []
        for position, event in enumerate(events):
            related = [event]
            related.extend(
                other
                for other in events[position + 1 :]
                if abs(other.timestamp - event.timestamp) <= window
            )
            if len(related) > 1:
                groups.append(
                    CorrelationGroup(
                        related_events=related,
                        correlation_type="temporal",
                        confidence=0.7,
                    )
                )
        return groups

    @staticmethod
    def _by_sandbox(events: Iterable[SecurityEvent]) -> dict[str, list[SecurityEvent]]:
        grouped: dict[str, list[SecurityEvent]] = defaultdict(list)
        for event in events:
            grouped[event.sandbox_id].append(event)
        return grouped

    def _correlate_by_sandbox(self, events: Sequence[SecurityEvent]) -> list[CorrelationGroup]:
        groups = []
        for sandbox_events in self._by_sandbox(events).values():
            severe = [e for e in sandbox_events if e.severity in _HIGH_SEVERITIES]
            if len(severe) > 1:
                groups.append(
                    CorrelationGroup(
                        related_events=severe,
                        correlation_type="sandbox_compromise",
                        confidence=0.9,
                    )
                )
        return groups

    def _correlate_attack_patterns(
        self, events: Sequence[SecurityEvent]
    ) -> list[CorrelationGroup]:
        groups = []
        for sandbox_events in self._by_sandbox(events).values():
            ordered = sorted(sandbox_events, key=attrgetter("timestamp"))
            for pattern in _ATTACK_PATTERNS:
                matched = self._find_sequence(ordered, pattern)
                if matched is not None:
                    groups.append(
                        CorrelationGroup(
                            related_events=matched,
                            correlation_type="attack_chain",
                            confidence=0.8,
                        )
                    )
        return groups

    @staticmethod
    def _find_sequence(
        events: Iterable[SecurityEvent], sequence: Sequence[str]
    ) -> list[SecurityEvent] | None:
        """Return the first events matching ``sequence`` in order, or None if incomplete."""
        matched: list[SecurityEvent] = []
        for event in events:
            if event.event_type == sequence[len(matched)]:
                matched.append(event)
                if len(matched) == len(sequence):
                    return matched
        return None