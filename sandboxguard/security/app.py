"""HTTP and websocket front end of the security monitor."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Annotated
from uuid import uuid4

from fastapi import FastAPI, Query, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy.exc import SQLAlchemyError

from sandboxguard.security.ebpf import EbpfMonitor
from sandboxguard.security.events import EventAggregator
from sandboxguard.security.falco import FalcoIntegration
from sandboxguard.security.metrics import MetricsCollector
from sandboxguard.security.models import (
    AggregationResult,
    Alert,
    AlertQuery,
    EventQuery,
    EventResponse,
    MonitoringRequest,
    MonitoringResponse,
    MonitoringStatus,
    PolicyResponse,
    QuarantineRecord,
    QuarantineRequest,
    SecurityEvent,
    SecurityPolicy,
)
from sandboxguard.security.policies import PolicyEngine
from sandboxguard.security.quarantine import QuarantineManager
from sandboxguard.security.storage import EventStore
from sandboxguard.security.websocket import WebSocketManager, handle_connection

logger = logging.getLogger(__name__)

DEFAULT_FALCO_RULES_PATH = "/etc/falco/falco_rules.yaml"
DEFAULT_AGGREGATION_WINDOW_MS = 60_000
EVENT_RETENTION_DAYS = 30
STALE_MONITOR_HOURS = 24

_METRICS_PERIOD = 60.0
_AGGREGATION_PERIOD = 300.0
_CLEANUP_PERIOD = 3600.0


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SandboxMonitor:
    """The monitors running for one sandbox."""

    sandbox_id: str
    provider: str
    start_time: datetime
    ebpf_monitor: EbpfMonitor | None = None
    falco_integration: FalcoIntegration | None = None


@dataclass
class AppState:
    """Everything the request handlers and background jobs share."""

    event_store: EventStore
    ebpf_enabled: bool = False
    falco_enabled: bool = False
    falco_rules_path: str = DEFAULT_FALCO_RULES_PATH
    policy_engine: PolicyEngine = field(default_factory=PolicyEngine)
    quarantine_manager: QuarantineManager = field(default_factory=QuarantineManager)
    metrics_collector: MetricsCollector = field(default_factory=MetricsCollector)
    ws_manager: WebSocketManager = field(default_factory=WebSocketManager)
    event_aggregator: EventAggregator = field(default_factory=EventAggregator)
    sandbox_monitors: dict[str, SandboxMonitor] = field(default_factory=dict)


class _ServiceError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def _not_found(message: str) -> _ServiceError:
    return _ServiceError(404, message)


@contextmanager
def _guarded() -> Iterator[None]:
    """Turn failures inside a handler into the service's JSON error responses."""
    try:
        yield
    except _ServiceError:
        raise
    except SQLAlchemyError as exc:
        raise _ServiceError(500, f"Database error: {exc}") from exc
    except Exception as exc:
        raise _ServiceError(500, f"Internal error: {exc}") from exc


def remove_stale_monitors(state: AppState, max_age_hours: float) -> list[str]:
    """Forget monitors started more than ``max_age_hours`` ago; return their sandbox ids."""
    threshold = _now() - timedelta(hours=max_age_hours)
    stale = [
        sandbox_id
        for sandbox_id, monitor in state.sandbox_monitors.items()
        if monitor.start_time < threshold
    ]
    for sandbox_id in stale:
        logger.warning("Removing stale monitor for sandbox %s", sandbox_id)
        del state.sandbox_monitors[sandbox_id]
    return stale


async def _every(period: float, job: Callable[[], None], name: str) -> None:
    while True:
        try:
            job()
        except Exception:
            logger.exception("Background job %s failed", name)
        await asyncio.sleep(period)


def _background_jobs(state: AppState) -> list[tuple[float, Callable[[], None], str]]:
    def collect_metrics() -> None:
        state.metrics_collector.collect_system_metrics()

    def aggregate() -> None:
        logger.info("Running event aggregation")
        logger.info("Aggregated %d events", state.event_store.aggregate_old_events())

    def cleanup() -> None:
        logger.info("Running cleanup task")
        try:
            count = state.event_store.cleanup_old_events(EVENT_RETENTION_DAYS)
            logger.info("Cleaned up %d old events", count)
        except SQLAlchemyError as exc:
            logger.error("Failed to cleanup events: %s", exc)
        remove_stale_monitors(state, STALE_MONITOR_HOURS)

    return [
        (_METRICS_PERIOD, collect_metrics, "metrics"),
        (_AGGREGATION_PERIOD, aggregate, "aggregation"),
        (_CLEANUP_PERIOD, cleanup, "cleanup"),
    ]


def create_app(
    event_store: EventStore,
    ebpf_enabled: bool = False,
    falco_enabled: bool = False,
    falco_rules_path: str = DEFAULT_FALCO_RULES_PATH,
) -> FastAPI:
    """Build the security monitor application around an event store."""
    state = AppState(
        event_store=event_store,
        ebpf_enabled=ebpf_enabled,
        falco_enabled=falco_enabled,
        falco_rules_path=str(falco_rules_path),
    )
    state.policy_engine.load_default_policies()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        tasks = [
            asyncio.create_task(_every(period, job, name))
            for period, job, name in _background_jobs(state)
        ]
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    app = FastAPI(title="Security monitor", lifespan=lifespan)
    app.state.security = state
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(_ServiceError)
    async def service_error(_: Request, exc: _ServiceError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    # Events

    @app.post("/api/events")
    async def capture_event(event: SecurityEvent) -> EventResponse:
        with _guarded():
            event_id = state.event_store.store_event(event)
            state.metrics_collector.record_event(event)
            evaluation = state.policy_engine.evaluate(event)

            if evaluation.action == "quarantine":
                record = state.quarantine_manager.quarantine(
                    event.sandbox_id, evaluation.reason, event
                )
                logger.warning(
                    "Sandbox quarantined: sandbox_id=%s quarantine_id=%s",
                    event.sandbox_id,
                    record.id,
                )
            elif evaluation.action == "alert":
                state.ws_manager.broadcast_alert(
                    Alert(
                        id=str(uuid4()),
                        severity=event.severity,
                        message=event.message,
                        timestamp=_now(),
                        sandbox_id=event.sandbox_id,
                        acknowledged=False,
                    )
                )

            state.ws_manager.broadcast_event(event)
            return EventResponse(
                event_id=event_id,
                action_taken=evaluation.action,
                matched_rules=list(evaluation.matched_rules),
            )

    @app.get("/api/events")
    async def list_events(
        sandbox_id: str | None = None,
        event_type: str | None = None,
        severity: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: Annotated[int | None, Query(ge=0)] = None,
        offset: Annotated[int | None, Query(ge=0)] = None,
    ) -> list[SecurityEvent]:
        with _guarded():
            return state.event_store.list_events(
                EventQuery(
                    sandbox_id=sandbox_id,
                    event_type=event_type,
                    severity=severity,
                    start_time=start_time,
                    end_time=end_time,
                    limit=limit,
                    offset=offset,
                )
            )

    @app.get("/api/events/aggregate")
    async def aggregate_events(
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        window_ms: Annotated[int | None, Query(ge=0)] = None,
    ) -> AggregationResult:
        with _guarded():
            events = state.event_store.list_events(
                EventQuery(
                    sandbox_id=None,
                    event_type=None,
                    severity=None,
                    start_time=start_time,
                    end_time=end_time,
                    limit=100,
                    offset=0,
                )
            )
            window = DEFAULT_AGGREGATION_WINDOW_MS if window_ms is None else window_ms
            return state.event_aggregator.aggregate(events, window)

    # Policies

    @app.post("/api/policies")
    async def create_policy(policy: SecurityPolicy) -> PolicyResponse:
        with _guarded():
            return PolicyResponse(policy_id=state.policy_engine.add_policy(policy))

    @app.get("/api/policies")
    async def list_policies() -> list[SecurityPolicy]:
        with _guarded():
            return state.policy_engine.list_policies()

    @app.get("/api/policies/{policy_id}")
    async def get_policy(policy_id: str) -> SecurityPolicy:
        with _guarded():
            policy = state.policy_engine.get_policy(policy_id)
        if policy is None:
            raise _not_found("Policy not found")
        return policy

    @app.put("/api/policies/{policy_id}")
    async def update_policy(policy_id: str, policy: SecurityPolicy) -> PolicyResponse:
        with _guarded():
            state.policy_engine.update_policy(policy_id, policy)
        return PolicyResponse(policy_id=policy_id)

    @app.delete("/api/policies/{policy_id}")
    async def delete_policy(policy_id: str) -> Response:
        with _guarded():
            state.policy_engine.remove_policy(policy_id)
        return Response(status_code=200)

    # Quarantine

    @app.post("/api/quarantine")
    async def quarantine_sandbox(request: QuarantineRequest) -> QuarantineRecord:
        with _guarded():
            return state.quarantine_manager.quarantine(
                request.sandbox_id, request.reason, request.triggering_event
            )

    @app.post("/api/quarantine/{quarantine_id}/release")
    async def release_quarantine(quarantine_id: str) -> Response:
        with _guarded():
            state.quarantine_manager.release(quarantine_id)
        return Response(status_code=200)

    @app.get("/api/quarantine")
    async def list_quarantines() -> list[QuarantineRecord]:
        with _guarded():
            return state.quarantine_manager.list_active()

    # Monitoring

    @app.post("/api/monitor/sandbox/{sandbox_id}/start")
    async def start_monitoring(
        sandbox_id: str, request: MonitoringRequest
    ) -> MonitoringResponse:
        with _guarded():
            monitor = SandboxMonitor(
                sandbox_id=sandbox_id, provider=request.provider, start_time=_now()
            )
            if state.ebpf_enabled:
                ebpf = EbpfMonitor(sandbox_id)
                await ebpf.attach_programs()
                monitor.ebpf_monitor = ebpf
            if state.falco_enabled:
                falco = FalcoIntegration(sandbox_id, state.falco_rules_path)
                try:
                    await falco.start()
                except BaseException:
                    if monitor.ebpf_monitor is not None:
                        await monitor.ebpf_monitor.detach_programs()
                    raise
                monitor.falco_integration = falco
            state.sandbox_monitors[sandbox_id] = monitor

        active = [
            name
            for name, enabled in (("ebpf", state.ebpf_enabled), ("falco", state.falco_enabled))
            if enabled
        ]
        return MonitoringResponse(
            sandbox_id=sandbox_id, status="monitoring", monitors_active=active
        )

    @app.post("/api/monitor/sandbox/{sandbox_id}/stop")
    async def stop_monitoring(sandbox_id: str) -> Response:
        with _guarded():
            monitor = state.sandbox_monitors.pop(sandbox_id, None)
            if monitor is not None:
                if monitor.ebpf_monitor is not None:
                    await monitor.ebpf_monitor.detach_programs()
                if monitor.falco_integration is not None:
                    await monitor.falco_integration.stop()
        return Response(status_code=200)

    @app.get("/api/monitor/sandbox/{sandbox_id}/status")
    async def monitoring_status(sandbox_id: str) -> MonitoringStatus:
        monitor = state.sandbox_monitors.get(sandbox_id)
        if monitor is None:
            raise _not_found("Monitor not found")
        uptime = max(int((_now() - monitor.start_time).total_seconds()), 0)
        return MonitoringStatus(
            sandbox_id=monitor.sandbox_id,
            provider=monitor.provider,
            start_time=monitor.start_time,
            uptime_seconds=uptime,
            ebpf_active=monitor.ebpf_monitor is not None,
            falco_active=monitor.falco_integration is not None,
        )

    # Dashboard

    @app.get("/api/dashboard/metrics")
    async def get_metrics(
        time_range: str | None = None, granularity: str | None = None
    ) -> JSONResponse:
        with _guarded():
            metrics = state.metrics_collector.get_dashboard_metrics(time_range, granularity)
            # Non-finite averages go out as null.
            return JSONResponse(content=json.loads(metrics.model_dump_json()))

    @app.get("/api/dashboard/alerts")
    async def get_alerts(
        acknowledged: bool | None = None,
        severity: str | None = None,
        limit: Annotated[int | None, Query(ge=0)] = None,
    ) -> list[Alert]:
        with _guarded():
            return state.event_store.list_alerts(
                AlertQuery(acknowledged=acknowledged, severity=severity, limit=limit)
            )

    @app.websocket("/api/dashboard/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await handle_connection(websocket, state.ws_manager)

    @app.get("/health", response_class=PlainTextResponse)
    async def health_check() -> str:
        return "OK"

    @app.get("/metrics", response_class=PlainTextResponse)
    async def prometheus_metrics() -> str:
        return state.metrics_collector.export_prometheus()

    return app