"""Falco runtime-security integration: runs falco and turns its JSON alerts into events."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any

from sandboxguard.security.models import SecurityEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SecurityEvent], None]

_STREAM_LIMIT = 1 << 20

_PRIORITY_SEVERITY = {
    "emergency": "critical",
    "alert": "critical",
    "critical": "critical",
    "error": "high",
    "warning": "medium",
    "notice": "low",
    "informational": "low",
    "debug": "low",
}

_RULE_EVENT_TYPES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("Write below etc", "Read sensitive file"), "file_access"),
    (("Outbound Connection", "Inbound Connection"), "network_activity"),
    (("Spawned Process", "Run shell"), "process_spawn"),
    (("Sudo", "Change thread namespace"), "privilege_escalation"),
    (("Container escape", "Crypto mining"), "suspicious_behavior"),
)

_METADATA_FIELDS = (
    ("pid", "proc.pid"),
    ("uid", "user.uid"),
    ("gid", "group.gid"),
    ("executable", "proc.name"),
    ("syscall", "evt.type"),
    ("filePath", "fd.name"),
)

_RFC3339 = re.compile(
    r"(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})"
)


def _parse_rfc3339(text: str) -> datetime | None:
    match = _RFC3339.fullmatch(text)
    if match is None:
        return None
    date, clock, fraction, offset = match.groups()
    micros = f".{fraction[:6].ljust(6, '0')}" if fraction else ""
    if offset in ("Z", "z"):
        offset = "+00:00"
    try:
        parsed = datetime.fromisoformat(f"{date}T{clock}{micros}{offset}")
    except ValueError:
        return None
    return parsed.astimezone(timezone.utc)


def map_rule_to_event_type(rule: str) -> str:
    """Classify a Falco rule name into one of the monitor's event types."""
    for markers, event_type in _RULE_EVENT_TYPES:
        if any(marker in rule for marker in markers):
            return event_type
    return "policy_violation"


def parse_falco_event(sandbox_id: str, falco_event: Any) -> SecurityEvent | None:
    """Build a security event from one decoded Falco alert, or None if it lacks key fields."""
    if not isinstance(falco_event, dict):
        return None
    required = [falco_event.get(key) for key in ("rule", "priority", "output", "time")]
    if not all(isinstance(value, str) for value in required):
        return None
    rule, priority, output, time = required

    timestamp = _parse_rfc3339(time) or datetime.now(timezone.utc)
    severity = _PRIORITY_SEVERITY.get(priority.lower(), "medium")

    if "output_fields" in falco_event:
        output_fields = falco_event["output_fields"]
        source = output_fields if isinstance(output_fields, dict) else {}
        metadata: dict[str, Any] | None = {
            key: source.get(field) for key, field in _METADATA_FIELDS
        }
        details = output_fields
    else:
        metadata = None
        details = {}

    return SecurityEvent(
        id=str(uuid.uuid4()),
        event_type=map_rule_to_event_type(rule),
        severity=severity,
        timestamp=timestamp,
        sandbox_id=sandbox_id,
        provider="custom",
        message=output,
        details=details,
        metadata=metadata,
        falco_rule=rule,
        ebpf_trace=None,
    )


class FalcoIntegration:
    """Runs a falco process for one sandbox and passes its alerts to handlers."""

    def __init__(
        self, sandbox_id: str, rules_path: str, command: Sequence[str] = ("falco",)
    ) -> None:
        self.sandbox_id = sandbox_id
        self.rules_path = str(rules_path)
        self._command = tuple(command)
        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task[None] | None = None
        self._handlers: list[EventHandler] = []
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._process is not None

    def on_event(self, handler: EventHandler) -> None:
        """Call ``handler`` with every event parsed from Falco's output."""
        self._handlers.append(handler)

    async def start(self) -> None:
        """Start falco; does nothing if it is already running for this sandbox."""
        async with self._lock:
            if self._process is not None:
                logger.warning(
                    "Falco integration already running for sandbox %s", self.sandbox_id
                )
                return
            process = await asyncio.create_subprocess_exec(
                *self._command,
                "-o",
                "json_output=true",
                "-o",
                "json_include_output_property=true",
                "-r",
                self.rules_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                limit=_STREAM_LIMIT,
            )
            self._process = process
            if process.stdout is not None:
                self._reader = asyncio.create_task(self._read_events(process.stdout))
            logger.info("Started Falco integration for sandbox %s", self.sandbox_id)

    async def _read_events(self, stream: asyncio.StreamReader) -> None:
        try:
            async for raw in stream:
                line = raw.decode(errors="replace").rstrip("\r\n")
                try:
                    payload = json.loads(line)
                except ValueError as exc:
                    logger.error("Failed to parse Falco event: %s - %s", exc, line)
                    continue
                event = parse_falco_event(self.sandbox_id, payload)
                if event is None:
                    continue
                for handler in list(self._handlers):
                    handler(event.model_copy(deep=True))
        except ValueError as exc:
            logger.error("Stopped reading Falco output: %s", exc)

    async def stop(self) -> None:
        """Kill the falco process, if any, and wait for it to exit."""
        async with self._lock:
            process, self._process = self._process, None
            reader, self._reader = self._reader, None
            if process is None:
                return
            try:
                process.kill()
            except ProcessLookupError:
                pass
            except OSError as exc:
                logger.error("Failed to kill Falco process: %s", exc)
            try:
                status = await process.wait()
                logger.info("Falco process exited with status: %s", status)
            except OSError as exc:
                logger.error("Error waiting for Falco process: %s", exc)
            if reader is not None:
                reader.cancel()
                await asyncio.gather(reader, return_exceptions=True)

    def __del__(self) -> None:
        process = getattr(self, "_process", None)
        if process is not None and process.returncode is None:
            with contextlib.suppress(Exception):
                process.kill()