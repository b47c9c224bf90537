"""
Process Registry -- In-memory registry of in-flight OS processes.

Every component that spawns a process (shell commands, background services,
assistant exchanges) registers it here under a token chosen by the caller
*before* the spawn, so the caller can cancel a process that has not produced
any output yet:

    from tools.process_registry import process_registry

    handle = process_registry.register("cmd-42", proc, kind="shell")
    process_registry.signal("cmd-42")      # terminate the process group
    process_registry.unregister("cmd-42", handle)

The registry never needs to know which executor owns a token: every entry
is a ProcessHandle, and a handle knows how to terminate its own process
group. Signalling an unknown or finished token is a no-op, since
cancellation racing natural completion is expected.
"""

import logging
import os
import signal
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tools.errors import AlreadyRegistered

logger = logging.getLogger(__name__)

KIND_SHELL = "shell"
KIND_SERVICE = "service"
KIND_ASSISTANT = "assistant"


def signal_process_group(process: Any, sig: int = signal.SIGTERM) -> None:
    """Send ``sig`` to the process group led by ``process``.

    Processes are spawned with start_new_session=True, so the group id is the
    leader's pid and shell-spawned children receive the signal too.
    """
    try:
        os.killpg(os.getpgid(process.pid), sig)
    except (ProcessLookupError, PermissionError):
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass


def _group_of(process: Any) -> Optional[int]:
    pid = getattr(process, "pid", None)
    if pid is None:
        return None
    try:
        return os.getpgid(pid)
    except (ProcessLookupError, PermissionError):
        return pid


@dataclass
class ProcessHandle:
    """
    A tracked process and the token it was registered under.

    The handle stays live until its owner unregisters it, not until the
    leader exits: a background child of ``/bin/sh`` can outlive the shell
    while still holding the output pipes, and that unit is still in flight.
    """
    token: str
    process: Any                                # asyncio.subprocess.Process
    kind: str = KIND_SHELL                      # "shell" | "service" | "assistant"
    started_at: float = field(default_factory=time.time)
    cancelled: bool = False                     # True once termination was requested
    pgid: Optional[int] = None                  # recorded at registration
    finished: bool = False                      # set when the owner unregisters

    def __post_init__(self):
        if self.pgid is None:
            self.pgid = _group_of(self.process)

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def running(self) -> bool:
        return not self.finished

    def terminate(self, sig: int = signal.SIGTERM) -> bool:
        """
        Signal the whole process group. Returns False once the owner has
        finished or when no member of the group is left to signal.
        """
        if self.finished:
            return False
        requested_before = self.cancelled
        self.cancelled = True
        if self.pgid is None:
            signal_process_group(self.process, sig)
            return True
        try:
            os.killpg(self.pgid, sig)
        except ProcessLookupError:
            # Group is empty; the owner is about to report a natural exit.
            self.cancelled = requested_before
            return False
        except PermissionError:
            try:
                self.process.send_signal(sig)
            except ProcessLookupError:
                pass
        return True

    def kill(self) -> bool:
        return self.terminate(signal.SIGKILL)


class ProcessRegistry:
    """
    Token -> ProcessHandle map guarded by a single lock.

    Accessed from the event loop (executors, service watchers, scheduler
    timers) and from whatever thread the UI uses to issue cancellations.
    """

    def __init__(self):
        self._handles: Dict[str, ProcessHandle] = {}
        self._lock = threading.Lock()

    # ----- Registration -----

    def register(self, token: str, process: Any, kind: str = KIND_SHELL) -> ProcessHandle:
        """
        Bind ``token`` to a live process.

        Raises AlreadyRegistered while the token's previous unit is still in
        flight, that is until its owner unregisters it.
        """
        handle = ProcessHandle(token=token, process=process, kind=kind)
        with self._lock:
            existing = self._handles.get(token)
            if existing is not None and existing.running:
                raise AlreadyRegistered(token)
            self._handles[token] = handle
        logger.debug("Registered %s process %s (pid=%s, pgid=%s)", kind, token, handle.pid, handle.pgid)
        return handle

    def unregister(self, token: str, handle: Optional[ProcessHandle] = None) -> bool:
        """
        Remove a binding and mark its handle finished. With ``handle`` given,
        only removes it if it is still the bound handle, so a finishing run
        cannot evict its successor.
        """
        with self._lock:
            if handle is not None:
                handle.finished = True
            current = self._handles.get(token)
            if current is None:
                return False
            if handle is not None and current is not handle:
                return False
            current.finished = True
            del self._handles[token]
        logger.debug("Unregistered process %s", token)
        return True

    # ----- Queries -----

    def get(self, token: str) -> Optional[ProcessHandle]:
        with self._lock:
            return self._handles.get(token)

    def is_running(self, token: str) -> bool:
        handle = self.get(token)
        return handle is not None and handle.running

    def list_running(self, kind: Optional[str] = None) -> List[str]:
        """Tokens currently bound to live processes, optionally of one kind."""
        with self._lock:
            handles = list(self._handles.values())
        return [
            h.token for h in handles
            if h.running and (kind is None or h.kind == kind)
        ]

    def list_handles(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        """Summaries of live handles, for status displays."""
        with self._lock:
            handles = list(self._handles.values())
        now = time.time()
        return [
            {
                "token": h.token,
                "kind": h.kind,
                "pid": h.pid,
                "started_at": time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(h.started_at)),
                "uptime_seconds": int(now - h.started_at),
            }
            for h in handles
            if h.running and (kind is None or h.kind == kind)
        ]

    # ----- Cancellation -----

    def signal(self, token: str, sig: int = signal.SIGTERM) -> bool:
        """
        Ask the process bound to ``token`` to terminate.

        Returns True if a signal was sent. Unknown or finished tokens are a
        no-op returning False.
        """
        handle = self.get(token)
        if handle is None:
            logger.debug("signal(%s): no such process", token)
            return False
        sent = handle.terminate(sig)
        if sent:
            logger.info("Sent signal %d to %s process %s (pid=%s)", sig, handle.kind, token, handle.pid)
        return sent

    def kill_all(self, kind: Optional[str] = None) -> int:
        """Terminate every live process, optionally of one kind. Returns count signalled."""
        killed = 0
        for token in self.list_running(kind):
            if self.signal(token):
                killed += 1
        return killed


# Module-level singleton
process_registry = ProcessRegistry()
