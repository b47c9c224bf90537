"""Shell command execution with cancellation through the process registry.

Runs one command through ``/bin/sh -c`` to completion or cancellation and
returns the raw captured stdout/stderr plus the exit status. A non-zero exit
is a successful execution with a failure result; only a process that could
not be spawned at all raises (SpawnError).

Cancellation is cooperative: ``kill_shell_process(token)`` signals the
process group through the registry, the executor notices, escalates to
SIGKILL after a grace period if needed, and returns whatever output was
captured with KILLED_EXIT_CODE.
"""

import asyncio
import codecs
import logging
import os
import signal
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from tools.errors import AlreadyRegistered, SpawnError
from tools.events import EventBus, OutputEvent, shell_key
from tools.process_registry import (
    KIND_SHELL,
    ProcessRegistry,
    process_registry,
    signal_process_group,
)

logger = logging.getLogger(__name__)

KILLED_EXIT_CODE = 130          # cancelled through the registry (same as Ctrl-C)
SIGNALLED_EXIT_CODE = -1        # died from a signal nobody asked for
TERMINATE_GRACE_SECONDS = 2.0   # SIGTERM -> SIGKILL escalation delay

_READ_CHUNK = 4096
_POLL_INTERVAL = 0.05


@dataclass
class ShellResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def cancelled(self) -> bool:
        return self.exit_code == KILLED_EXIT_CODE

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def resolve_working_directory(path: Optional[str]) -> str:
    """Expand ``~`` and ``~/...``; an empty path means the home directory."""
    if not path or path == "~":
        return os.path.expanduser("~")
    if path.startswith("~/"):
        return os.path.expanduser(path)
    return path


async def spawn_shell(command: str, cwd: str, env: Optional[Dict[str, str]] = None,
                      limit: int = 2 ** 20) -> Any:
    """Start ``command`` under /bin/sh in its own session with piped stdout/stderr."""
    try:
        return await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            env=(os.environ | env) if env else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
            limit=limit,
        )
    except OSError as e:
        raise SpawnError(f"Failed to spawn command: {e}") from e


def _publisher(bus: Optional[EventBus], token: str, is_stderr: bool) -> Optional[Callable[[bytes], None]]:
    if bus is None:
        return None
    key = shell_key(token)
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _publish(data: bytes) -> None:
        text = decoder.decode(data)
        if text:
            bus.publish(key, OutputEvent(source_id=token, text=text, is_stderr=is_stderr))

    return _publish


async def _drain(stream: asyncio.StreamReader, chunks: List[bytes],
                 on_chunk: Optional[Callable[[bytes], None]] = None) -> None:
    while True:
        data = await stream.read(_READ_CHUNK)
        if not data:
            break
        chunks.append(data)
        if on_chunk is not None:
            on_chunk(data)


async def wait_with_escalation(proc: Any, handle: Any, grace_seconds: float,
                               readers: Sequence[asyncio.Future] = ()) -> None:
    """
    Wait for the process and its output readers to finish.

    A background child can keep the pipes open after the shell exits, so the
    unit is only done once the readers are. Once cancellation was requested
    the group gets SIGKILL after the grace period, and readers still blocked
    after a second grace period (a child that left the group) are abandoned.
    """
    loop = asyncio.get_running_loop()
    waiter = asyncio.ensure_future(proc.wait())
    pending = {waiter, *readers}
    kill_at: Optional[float] = None
    abandon_at: Optional[float] = None
    try:
        while pending:
            _, pending = await asyncio.wait(pending, timeout=_POLL_INTERVAL)
            if not pending or not handle.cancelled:
                continue
            now = loop.time()
            if kill_at is None:
                kill_at = now + grace_seconds
            elif abandon_at is None and now >= kill_at:
                logger.warning("Process %s ignored SIGTERM, sending SIGKILL", handle.token)
                handle.kill()
                abandon_at = now + grace_seconds
            elif abandon_at is not None and now >= abandon_at:
                logger.warning("Process %s: output still open after SIGKILL, giving up on it", handle.token)
                break
    finally:
        for fut in (waiter, *readers):
            if not fut.done():
                fut.cancel()


async def run_shell_command(
    token: str,
    command: str,
    working_directory: Optional[str] = None,
    *,
    registry: Optional[ProcessRegistry] = None,
    bus: Optional[EventBus] = None,
    env: Optional[Dict[str, str]] = None,
    grace_seconds: float = TERMINATE_GRACE_SECONDS,
) -> ShellResult:
    """
    Run ``command`` through the system shell and capture its output.

    Args:
        token: Caller-chosen id used for cancellation (kill_shell_process).
        command: Shell command text; pipelines and operators work.
        working_directory: Absolute path, ``~`` or ``~/...``. Defaults to home.
        registry: Process registry to register with (module singleton by default).
        bus: When given, each output chunk and a final completion event are
             published under ``shell:<token>``.
        env: Extra environment variables for the child only.

    Returns:
        ShellResult with raw stdout/stderr. exit_code is KILLED_EXIT_CODE when
        the command was cancelled.

    Raises:
        SpawnError: The directory is invalid or the shell could not start.
        AlreadyRegistered: ``token`` is still bound to a running process.
    """
    registry = registry or process_registry
    cwd = resolve_working_directory(working_directory)
    if not os.path.isdir(cwd):
        raise SpawnError(f"Working directory does not exist: {cwd}")
    if registry.is_running(token):
        raise AlreadyRegistered(token)

    proc = await spawn_shell(command, cwd, env=env)
    try:
        handle = registry.register(token, proc, kind=KIND_SHELL)
    except AlreadyRegistered:
        signal_process_group(proc, signal.SIGKILL)
        await proc.wait()
        raise

    logger.info("Running command %s in %s: %s", token, cwd, command[:200])

    stdout_chunks: List[bytes] = []
    stderr_chunks: List[bytes] = []
    readers = [
        asyncio.ensure_future(_drain(proc.stdout, stdout_chunks, _publisher(bus, token, False))),
        asyncio.ensure_future(_drain(proc.stderr, stderr_chunks, _publisher(bus, token, True))),
    ]

    try:
        await wait_with_escalation(proc, handle, grace_seconds, readers)
    except asyncio.CancelledError:
        handle.terminate()
        for reader in readers:
            reader.cancel()
        raise
    finally:
        registry.unregister(token, handle)

    if handle.cancelled:
        exit_code = KILLED_EXIT_CODE
    elif proc.returncode < 0:
        exit_code = SIGNALLED_EXIT_CODE
    else:
        exit_code = proc.returncode

    result = ShellResult(
        stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
        stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
        exit_code=exit_code,
    )
    logger.info("Command %s finished with exit code %d", token, exit_code)
    if bus is not None:
        bus.publish(shell_key(token), OutputEvent(source_id=token, is_complete=True, exit_code=exit_code))
    return result


def kill_shell_process(token: str, registry: Optional[ProcessRegistry] = None) -> bool:
    """Best-effort cancellation. Returns False if nothing was running under ``token``."""
    return (registry or process_registry).signal(token)
