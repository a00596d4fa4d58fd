"""Kernel probe monitoring of a sandbox, emitting simulated file, network and process events."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from sandboxguard.security.models import SecurityEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SecurityEvent], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_file_access_event(sandbox_id: str) -> SecurityEvent:
    return SecurityEvent(
        id=str(uuid.uuid4()),
        event_type="file_access",
        severity="medium",
        timestamp=_now(),
        sandbox_id=sandbox_id,
        provider="custom",
        message="File access detected via eBPF",
        details={"syscall": "openat", "filename": "/tmp/test.txt", "flags": "O_RDONLY"},
        metadata={"pid": 1234, "uid": 1000, "executable": "/bin/cat"},
        falco_rule=None,
        ebpf_trace="file_monitor",
    )


def create_network_event(sandbox_id: str) -> SecurityEvent:
    return SecurityEvent(
        id=str(uuid.uuid4()),
        event_type="network_activity",
        severity="low",
        timestamp=_now(),
        sandbox_id=sandbox_id,
        provider="custom",
        message="Network activity detected via eBPF",
        details={"protocol": "TCP", "bytes": 1024},
        metadata={"sourceIp": "10.0.0.1", "destinationIp": "8.8.8.8", "port": 443},
        falco_rule=None,
        ebpf_trace="network_monitor",
    )


def create_process_event(sandbox_id: str) -> SecurityEvent:
    return SecurityEvent(
        id=str(uuid.uuid4()),
        event_type="process_spawn",
        severity="medium",
        timestamp=_now(),
        sandbox_id=sandbox_id,
        provider="custom",
        message="Process spawn detected via eBPF",
        details={"command": "/bin/sh", "args": ["-c", "echo hello"]},
        metadata={"pid": 5678, "ppid": 1234, "uid": 1000, "executable": "/bin/sh"},
        falco_rule=None,
        ebpf_trace="process_monitor",
    )


_EVENT_FACTORIES: dict[str, Callable[[str], SecurityEvent]] = {
    "file_monitor": create_file_access_event,
    "network_monitor": create_network_event,
    "process_monitor": create_process_event,
}

_DEFAULT_PROGRAMS = (
    ("file_monitor", "tracepoint", "syscalls:sys_enter_openat"),
    ("network_monitor", "xdp", "eth0"),
    ("process_monitor", "tracepoint", "sched:sched_process_exec"),
)


@dataclass
class _EbpfProgram:
    id: str
    program_type: str
    attach_point: str
    loaded: bool = False
    task: asyncio.Task[None] | None = None


class EbpfMonitor:
    """Attaches the default probe programs to one sandbox and reports their events."""

    def __init__(
        self,
        sandbox_id: str,
        *,
        event_interval: float = 30.0,
        load_delay: float = 0.1,
        unload_delay: float = 0.05,
    ) -> None:
        self.sandbox_id = sandbox_id
        self._event_interval = event_interval
        self._load_delay = load_delay
        self._unload_delay = unload_delay
        self._programs: list[_EbpfProgram] = []
        self._handlers: list[EventHandler] = []
        self._lock = asyncio.Lock()

    @property
    def loaded_programs(self) -> list[str]:
        """Ids of the programs currently attached, in attach order."""
        return [program.id for program in self._programs if program.loaded]

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def attach_programs(self) -> None:
        """Load the file, network and process monitors; failures are logged and skipped."""
        async with self._lock:
            for program_id, program_type, attach_point in _DEFAULT_PROGRAMS:
                program = _EbpfProgram(program_id, program_type, attach_point)
                try:
                    await self._load_program(program)
                except Exception as exc:
                    logger.error("Failed to load eBPF program %s: %s", program.id, exc)
                    continue
                logger.info("Loaded eBPF program: %s", program.id)
                self._programs.append(program)

    async def detach_programs(self) -> None:
        """Unload every attached program and forget them all."""
        async with self._lock:
            for program in self._programs:
                if not program.loaded:
                    continue
                try:
                    await self._unload_program(program)
                except Exception as exc:
                    logger.error("Failed to unload eBPF program %s: %s", program.id, exc)
                    continue
                logger.info("Unloaded eBPF program: %s", program.id)
                program.loaded = False
            self._programs.clear()

    async def _load_program(self, program: _EbpfProgram) -> None:
        await asyncio.sleep(self._load_delay)
        program.loaded = True
        factory = _EVENT_FACTORIES.get(program.id)
        if factory is not None:
            program.task = asyncio.create_task(self._generate_events(factory))

    async def _unload_program(self, program: _EbpfProgram) -> None:
        await asyncio.sleep(self._unload_delay)
        task, program.task = program.task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.info("Detached eBPF program: %s", program.id)

    async def _generate_events(self, factory: Callable[[str], SecurityEvent]) -> None:
        while True:
            event = factory(self.sandbox_id)
            for handler in list(self._handlers):
                handler(event.model_copy(deep=True))
            await asyncio.sleep(self._event_interval)