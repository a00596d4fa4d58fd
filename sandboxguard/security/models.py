"""Data models shared by the security monitor: events, policies, quarantines and API payloads."""

from __future__ import annotations

from typing import Any

from pydantic import AwareDatetime, BaseModel, NonNegativeFloat, NonNegativeInt


class SecurityEvent(BaseModel):
    """A single security-relevant observation from a sandbox."""

    id: str
    event_type: str
    severity: str
    timestamp: AwareDatetime
    sandbox_id: str
    provider: str
    message: str
    details: Any
    metadata: Any | None = None
    falco_rule: str | None = None
    ebpf_trace: str | None = None


class RuleCondition(BaseModel):
    """Conditions an event must satisfy for a rule to match."""

    event_type: str | None = None
    severity: str | None = None
    pattern: str | None = None
    threshold: NonNegativeInt | None = None
    time_window_ms: NonNegativeInt | None = None


class SecurityRule(BaseModel):
    """A rule inside a policy: a condition and the action taken when it matches."""

    id: str
    name: str
    description: str
    condition: RuleCondition
    action: str
    notifications: list[str] | None = None


class SecurityPolicy(BaseModel):
    """A named, tiered collection of security rules."""

    id: str
    name: str
    description: str
    enabled: bool
    tier: str
    rules: list[SecurityRule]
    created_at: AwareDatetime
    updated_at: AwareDatetime


class QuarantineRecord(BaseModel):
    """A quarantine placed on a sandbox; active while ``end_time`` is unset."""

    id: str
    sandbox_id: str
    reason: str
    triggered_by: SecurityEvent
    start_time: AwareDatetime
    end_time: AwareDatetime | None = None
    auto_release: bool
    release_conditions: list[str] | None = None


class Alert(BaseModel):
    """A notification raised for the dashboard."""

    id: str
    severity: str
    message: str
    timestamp: AwareDatetime
    sandbox_id: str | None = None
    acknowledged: bool


class EventPattern(BaseModel):
    """Occurrences of one event type and severity within a time window."""

    event_type: str
    count: NonNegativeInt
    severity: str
    sandboxes: list[str]
    first_seen: AwareDatetime
    last_seen: AwareDatetime


class CorrelationGroup(BaseModel):
    """A set of events judged to be related."""

    related_events: list[SecurityEvent]
    correlation_type: str
    confidence: float


class AggregationResult(BaseModel):
    """Patterns, anomalies and correlations found in a batch of events."""

    patterns: list[EventPattern]
    anomalies: list[SecurityEvent]
    correlation_groups: list[CorrelationGroup]


class RealtimeMetrics(BaseModel):
    events_per_second: float
    active_sandboxes: NonNegativeInt
    quarantined_sandboxes: NonNegativeInt
    critical_events: NonNegativeInt


class DashboardMetrics(BaseModel):
    total_events: NonNegativeInt
    events_by_type: dict[str, NonNegativeInt]
    events_by_severity: dict[str, NonNegativeInt]
    quarantined_sandboxes: NonNegativeInt
    policy_violations: NonNegativeInt
    compliance_score: float
    avg_response_time_ms: float
    active_monitors: NonNegativeInt
    realtime_metrics: RealtimeMetrics


class EventQuery(BaseModel):
    """Filters for listing stored events; pages of 100 from the start by default."""

    sandbox_id: str | None = None
    event_type: str | None = None
    severity: str | None = None
    start_time: AwareDatetime | None = None
    end_time: AwareDatetime | None = None
    limit: NonNegativeInt | None = 100
    offset: NonNegativeInt | None = 0


class AggregationQuery(BaseModel):
    start_time: AwareDatetime | None = None
    end_time: AwareDatetime | None = None
    window_ms: NonNegativeInt | None = None


class MetricsQuery(BaseModel):
    time_range: str | None = None
    granularity: str | None = None


class AlertQuery(BaseModel):
    acknowledged: bool | None = None
    severity: str | None = None
    limit: NonNegativeInt | None = None


class QuarantineRequest(BaseModel):
    sandbox_id: str
    reason: str
    triggering_event: SecurityEvent


class MonitoringRequest(BaseModel):
    provider: str
    ebpf_programs: list[str] | None = None
    falco_rules: str | None = None


class EventResponse(BaseModel):
    event_id: str
    action_taken: str
    matched_rules: list[str]


class PolicyResponse(BaseModel):
    policy_id: str


class MonitoringResponse(BaseModel):
    sandbox_id: str
    status: str
    monitors_active: list[str]


class MonitoringStatus(BaseModel):
    sandbox_id: str
    provider: str
    start_time: AwareDatetime
    uptime_seconds: NonNegativeInt
    ebpf_active: bool
    falco_active: bool


class PolicyEvaluation(BaseModel):
    """Outcome of evaluating an event against all enabled policies."""

    action: str
    reason: str
    matched_rules: list[str]
    confidence: NonNegativeFloat