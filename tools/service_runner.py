"""
Service Runner -- long-running background processes (dev servers, watchers).

A service runs until it exits on its own or is stopped. Its output is
published line by line on the event bus under ``service:<id>`` and kept in a
ring buffer of the last MAX_OUTPUT_LINES lines:

    runner = ServiceRunner()
    await runner.start("web", "npm run dev", "~/projects/site")
    runner.list_running()                  # ["web"]
    runner.stop("web")                     # completion event follows on exit

Every start produces exactly one completion event (``is_complete=True``),
always the last event of that run. stop() only signals; the completion event
is emitted by the watcher once the process has actually died.
"""

import asyncio
import logging
import os
import signal
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from tools.errors import AlreadyRegistered, AlreadyRunning, SpawnError
from tools.events import EventBus, OutputEvent, event_bus, service_key
from tools.process_registry import (
    KIND_SERVICE,
    ProcessHandle,
    ProcessRegistry,
    process_registry,
    signal_process_group,
)
from tools.shell_executor import (
    TERMINATE_GRACE_SECONDS,
    resolve_working_directory,
    spawn_shell,
    wait_with_escalation,
)

logger = logging.getLogger(__name__)

MAX_OUTPUT_LINES = 200


@dataclass
class ServiceRunState:
    """Live state of one service run. Not persisted."""
    service_id: str
    command: str
    cwd: str
    started_at: float = field(default_factory=time.time)
    running: bool = True
    exit_code: Optional[int] = None
    output: Deque[str] = field(default_factory=lambda: deque(maxlen=MAX_OUTPUT_LINES))
    handle: Optional[ProcessHandle] = field(default=None, repr=False)
    watcher: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def pid(self) -> Optional[int]:
        return self.handle.pid if self.handle else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_id": self.service_id,
            "command": self.command,
            "cwd": self.cwd,
            "pid": self.pid,
            "running": self.running,
            "exit_code": self.exit_code,
            "uptime_seconds": int(time.time() - self.started_at),
            "output_preview": list(self.output)[-5:],
        }


class ServiceRunner:
    """Starts, stops and watches background services keyed by service id."""

    def __init__(
        self,
        registry: Optional[ProcessRegistry] = None,
        bus: Optional[EventBus] = None,
        max_output_lines: int = MAX_OUTPUT_LINES,
        grace_seconds: float = TERMINATE_GRACE_SECONDS,
    ):
        self.registry = registry or process_registry
        self.bus = bus if bus is not None else event_bus
        self.max_output_lines = max_output_lines
        self.grace_seconds = grace_seconds
        self._states: Dict[str, ServiceRunState] = {}

    # ----- Start / Stop -----

    async def start(self, service_id: str, command: str,
                    working_directory: Optional[str] = None) -> ServiceRunState:
        """
        Spawn ``command`` as service ``service_id``.

        Raises:
            AlreadyRunning: The id has a live process.
            SpawnError: The directory is invalid or the shell could not start.
        """
        if self.registry.is_running(service_id):
            raise AlreadyRunning(service_id)

        # Let the previous run deliver its completion event before this run's
        # first line can appear on the same key.
        previous = self._states.get(service_id)
        if previous is not None and previous.watcher is not None and not previous.watcher.done():
            await asyncio.shield(previous.watcher)

        cwd = resolve_working_directory(working_directory)
        if not os.path.isdir(cwd):
            raise SpawnError(f"Working directory does not exist: {cwd}")

        proc = await spawn_shell(command, cwd)
        try:
            handle = self.registry.register(service_id, proc, kind=KIND_SERVICE)
        except AlreadyRegistered:
            signal_process_group(proc, signal.SIGKILL)
            await proc.wait()
            raise AlreadyRunning(service_id) from None

        state = ServiceRunState(
            service_id=service_id,
            command=command,
            cwd=cwd,
            output=deque(maxlen=self.max_output_lines),
            handle=handle,
        )
        self._states[service_id] = state

        readers = [
            asyncio.create_task(self._read_lines(state, proc.stdout, False)),
            asyncio.create_task(self._read_lines(state, proc.stderr, True)),
        ]
        state.watcher = asyncio.create_task(self._watch(state, proc, handle, readers))
        logger.info("Started service %s (pid=%s) in %s: %s", service_id, proc.pid, cwd, command[:200])
        return state

    def stop(self, service_id: str) -> bool:
        """Signal the service's process group. Returns False if it was not running."""
        stopped = self.registry.signal(service_id)
        if stopped:
            logger.info("Stopping service %s", service_id)
        return stopped

    async def stop_all(self) -> None:
        for service_id in self.list_running():
            self.stop(service_id)
        watchers = [s.watcher for s in self._states.values() if s.watcher and not s.watcher.done()]
        if watchers:
            await asyncio.gather(*watchers, return_exceptions=True)

    # ----- Reader / Watcher Tasks -----

    async def _read_lines(self, state: ServiceRunState, stream: asyncio.StreamReader, is_stderr: bool):
        key = service_key(state.service_id)
        while True:
            try:
                line = await stream.readline()
            except ValueError as e:
                # Over-long line without a newline; the buffer was discarded.
                logger.debug("Service %s: skipped oversized line: %s", state.service_id, e)
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip("\r\n")
            state.output.append(text)
            self.bus.publish(key, OutputEvent(source_id=state.service_id, text=text, is_stderr=is_stderr))

    async def _watch(self, state: ServiceRunState, proc: Any, handle: ProcessHandle, readers: List[asyncio.Task]):
        try:
            await wait_with_escalation(proc, handle, self.grace_seconds, readers)
        except asyncio.CancelledError:
            handle.kill()
            for reader in readers:
                reader.cancel()
            raise
        finally:
            self.registry.unregister(state.service_id, handle)
            state.running = False
            state.exit_code = proc.returncode
            logger.info("Service %s exited with code %s", state.service_id, proc.returncode)
            self.bus.publish(
                service_key(state.service_id),
                OutputEvent(source_id=state.service_id, is_complete=True, exit_code=proc.returncode),
            )

    # ----- Queries -----

    def list_running(self) -> List[str]:
        """Ids of services with a live process, straight from the registry."""
        return self.registry.list_running(kind=KIND_SERVICE)

    def get_state(self, service_id: str) -> Optional[ServiceRunState]:
        return self._states.get(service_id)

    def known_ids(self) -> List[str]:
        """Ids with a remembered run, live or finished."""
        return list(self._states)

    def forget(self, service_id: str) -> bool:
        """Drop the state and output of a finished run. A live run is kept."""
        state = self._states.get(service_id)
        if state is None or state.running:
            return False
        del self._states[service_id]
        logger.debug("Forgot service %s", service_id)
        return True

    def get_output(self, service_id: str) -> List[str]:
        state = self._states.get(service_id)
        return list(state.output) if state else []

    async def wait(self, service_id: str, timeout: Optional[float] = None) -> Optional[int]:
        """Block until the current run of ``service_id`` has exited. Returns its exit code."""
        state = self._states.get(service_id)
        if state is None or state.watcher is None:
            return None
        await asyncio.wait_for(asyncio.shield(state.watcher), timeout)
        return state.exit_code


# =============================================================================
# Module-level convenience API
# =============================================================================

_default_runner: Optional[ServiceRunner] = None


def get_service_runner() -> ServiceRunner:
    global _default_runner
    if _default_runner is None:
        _default_runner = ServiceRunner()
    return _default_runner


async def start_service(service_id: str, command: str,
                        working_directory: Optional[str] = None) -> ServiceRunState:
    return await get_service_runner().start(service_id, command, working_directory)


def stop_service(service_id: str) -> bool:
    return get_service_runner().stop(service_id)


def get_running_services() -> List[str]:
    return get_service_runner().list_running()
