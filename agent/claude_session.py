"""
Claude CLI session manager -- one assistant subprocess per conversational turn.

Each turn spawns ``claude --print --output-format stream-json ...`` with the
message, optional system prompt and working directory. Passing the session
id returned by the previous turn (``--resume``) continues the same
conversation; without one the CLI starts a new session.

While the CLI runs, its stream-json output is translated into events
published on the bus under ``assistant:<conversation_id>``:

    ThinkingEvent   -- status text ("Using Bash..."); replaces the previous one
    ContentEvent    -- a fragment of the reply; fragments concatenate in order
    CompletedEvent  -- final event of a successful turn (session id, tokens)
    ErrorEvent      -- final event of a failed turn

Integrations are scoped to the spawned process: API keys become environment
variables of the child only, MCP servers go into a temporary --mcp-config
file that is removed after the turn.
"""

import asyncio
import json
import logging
import os
import shutil
import signal
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from tools.errors import AlreadyRegistered, AssistantCancelled, AssistantError, SpawnError
from tools.events import EventBus, assistant_key, event_bus
from tools.process_registry import (
    KIND_ASSISTANT,
    ProcessRegistry,
    process_registry,
    signal_process_group,
)
from tools.shell_executor import (
    TERMINATE_GRACE_SECONDS,
    resolve_working_directory,
    wait_with_escalation,
)

logger = logging.getLogger(__name__)

DEFAULT_ASSISTANT_COMMAND = "claude"
DEFAULT_PERMISSION_MODE = "bypassPermissions"
DEFAULT_ALLOWED_TOOLS = ["Bash(*)", "Read(*)", "Write(*)", "Edit(*)", "WebFetch(*)"]

INTEGRATION_MCP = "mcp"
INTEGRATION_API_KEY = "api-key"

MCP_CONFIG_PREFIX = ".quest-mcp-"
_STREAM_LIMIT = 16 * 2 ** 20


# =============================================================================
# Request / response types
# =============================================================================

@dataclass
class IntegrationConfig:
    """An MCP server launch command or an API key exposed through an env var."""
    id: str
    name: str
    type: str                                   # "mcp" | "api-key"
    server_command: Optional[str] = None        # mcp: e.g. "npx"
    server_args: Optional[List[str]] = None     # mcp: e.g. ["@scope/server", "/path"]
    env_variable: Optional[str] = None          # api-key: e.g. "GITHUB_TOKEN"
    api_key: Optional[str] = None
    service_name: Optional[str] = None          # api-key: display name, e.g. "GitHub"
    enabled: bool = True

    @property
    def display_name(self) -> str:
        return self.service_name or self.name

    @property
    def has_api_key(self) -> bool:
        return self.type == INTEGRATION_API_KEY and bool(self.env_variable) and bool(self.api_key)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntegrationConfig":
        """Accepts both snake_case keys and the UI's camelCase keys."""
        def pick(snake, camel):
            return data.get(snake, data.get(camel))

        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            type=data.get("type", INTEGRATION_MCP),
            server_command=pick("server_command", "serverCommand"),
            server_args=pick("server_args", "serverArgs"),
            env_variable=pick("env_variable", "envVariable"),
            api_key=pick("api_key", "apiKey"),
            service_name=pick("service_name", "serviceName"),
            enabled=data.get("enabled", True),
        )


@dataclass
class AssistantRequest:
    conversation_id: str
    message: str
    system_prompt: Optional[str] = None
    working_directory: Optional[str] = None
    integrations: List[IntegrationConfig] = field(default_factory=list)
    session_id: Optional[str] = None


@dataclass
class AssistantResult:
    response: str
    session_id: Optional[str] = None
    tokens_used: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ThinkingEvent:
    conversation_id: str
    text: str


@dataclass(frozen=True)
class ContentEvent:
    conversation_id: str
    text: str


@dataclass(frozen=True)
class CompletedEvent:
    conversation_id: str
    session_id: Optional[str] = None
    tokens_used: Optional[int] = None


@dataclass(frozen=True)
class ErrorEvent:
    conversation_id: str
    message: str


AssistantEvent = Union[ThinkingEvent, ContentEvent, CompletedEvent, ErrorEvent]


# =============================================================================
# Integrations
# =============================================================================

def build_integration_env(integrations: Sequence[IntegrationConfig]) -> Dict[str, str]:
    """Environment variables for API-key integrations (child process only)."""
    return {
        integ.env_variable: integ.api_key
        for integ in integrations
        if integ.has_api_key
    }


def build_mcp_config(integrations: Sequence[IntegrationConfig]) -> Optional[Dict[str, Any]]:
    """
    The --mcp-config document, or None when no config file is needed.

    With only API-key integrations the document has an empty server map,
    which keeps the user's global MCP servers out of the session.
    """
    servers: Dict[str, Dict[str, Any]] = {}
    for integ in integrations:
        if integ.type == INTEGRATION_MCP and integ.server_command and integ.server_args is not None:
            servers[integ.id] = {
                "command": integ.server_command,
                "args": list(integ.server_args),
            }
    if not servers and not build_integration_env(integrations):
        return None
    return {"mcpServers": servers}


# =============================================================================
# Stream parsing
# =============================================================================

def _extract_tokens(payload: Dict[str, Any]) -> int:
    usage = payload.get("usage")
    total = 0
    if isinstance(usage, dict):
        if isinstance(usage.get("total_tokens"), int):
            total = usage["total_tokens"]
        else:
            total = int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)
    if total == 0 and isinstance(payload.get("stats"), dict):
        stats = payload["stats"]
        total = int(stats.get("input_tokens") or 0) + int(stats.get("output_tokens") or 0)
    return total


class StreamParser:
    """Folds stream-json lines into events plus the turn's final state."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self.parts: List[str] = []
        self.session_id: Optional[str] = None
        self.tokens_used = 0
        self.error: Optional[str] = None
        self.got_result = False
        self._result_text: Optional[str] = None

    @property
    def response(self) -> str:
        if self.parts:
            return "".join(self.parts)
        return self._result_text or ""

    def feed(self, line: str) -> List[AssistantEvent]:
        line = line.strip()
        if not line:
            return []
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON assistant output: %s", line[:200])
            return []
        if not isinstance(payload, dict):
            return []

        msg_type = payload.get("type", "")
        if msg_type == "assistant":
            return self._on_assistant(payload)
        if msg_type == "error":
            self._on_error(payload)
        elif msg_type == "system":
            message = payload.get("message")
            if isinstance(message, str) and "error" in message.lower():
                self.error = message
        elif msg_type == "result":
            self._on_result(payload)
        return []

    def _on_assistant(self, payload: Dict[str, Any]) -> List[AssistantEvent]:
        events: List[AssistantEvent] = []
        message = payload.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return events
        for item in content:
            if not isinstance(item, dict):
                continue
            kind = item.get("type")
            if kind == "text" and isinstance(item.get("text"), str):
                self.parts.append(item["text"])
                events.append(ContentEvent(self.conversation_id, item["text"]))
            elif kind == "thinking" and isinstance(item.get("thinking"), str):
                events.append(ThinkingEvent(self.conversation_id, item["thinking"]))
            elif kind == "tool_use":
                events.append(ThinkingEvent(self.conversation_id, f"Using {item.get('name') or 'tool'}..."))
        return events

    def _on_error(self, payload: Dict[str, Any]) -> None:
        err = payload.get("error")
        if isinstance(err, dict):
            self.error = err.get("message") if isinstance(err.get("message"), str) else "Unknown error"
        elif isinstance(err, str):
            self.error = err
        elif err is not None:
            self.error = "Unknown error"
        elif isinstance(payload.get("message"), str):
            self.error = payload["message"]

    def _on_result(self, payload: Dict[str, Any]) -> None:
        self.got_result = True
        result = payload.get("result")
        if isinstance(result, str):
            if payload.get("is_error"):
                self.error = result
            else:
                self._result_text = result
        if isinstance(payload.get("session_id"), str):
            self.session_id = payload["session_id"]
        self.tokens_used = _extract_tokens(payload) or self.tokens_used


# =============================================================================
# Session manager
# =============================================================================

class AssistantSessionManager:
    """
    Runs assistant turns as registered, cancellable subprocesses.

    The conversation id doubles as the process token, so at most one turn
    per conversation is in flight and ``cancel(conversation_id)`` (or
    ``process_registry.signal(conversation_id)``) stops it.
    """

    def __init__(
        self,
        registry: Optional[ProcessRegistry] = None,
        bus: Optional[EventBus] = None,
        command: str = DEFAULT_ASSISTANT_COMMAND,
        permission_mode: str = DEFAULT_PERMISSION_MODE,
        allowed_tools: Optional[Sequence[str]] = None,
        extra_args: Sequence[str] = (),
        grace_seconds: float = TERMINATE_GRACE_SECONDS,
    ):
        self.registry = registry or process_registry
        self.bus = bus if bus is not None else event_bus
        self.command = command
        self.permission_mode = permission_mode
        self.allowed_tools = list(allowed_tools if allowed_tools is not None else DEFAULT_ALLOWED_TOOLS)
        self.extra_args = list(extra_args)
        self.grace_seconds = grace_seconds

    @classmethod
    def from_config(cls, config: Dict[str, Any], **kwargs) -> "AssistantSessionManager":
        assistant_cfg = config.get("assistant", {})
        return cls(
            command=assistant_cfg.get("command", DEFAULT_ASSISTANT_COMMAND),
            permission_mode=assistant_cfg.get("permission_mode", DEFAULT_PERMISSION_MODE),
            allowed_tools=assistant_cfg.get("allowed_tools"),
            extra_args=assistant_cfg.get("extra_args") or (),
            grace_seconds=config.get("shell", {}).get("terminate_grace_seconds", TERMINATE_GRACE_SECONDS),
            **kwargs,
        )

    def build_command(self, request: AssistantRequest, mcp_config_path: Optional[Path] = None) -> List[str]:
        argv = [self.command]
        if request.session_id:
            argv += ["--resume", request.session_id]
        if request.system_prompt:
            argv += ["--system-prompt", request.system_prompt]
        if mcp_config_path is not None:
            argv += ["--mcp-config", str(mcp_config_path)]
        settings = {"permissions": {"allow": self.allowed_tools, "deny": []}}
        argv += [
            "--print",
            "--output-format", "stream-json",
            "--verbose",
            "--permission-mode", self.permission_mode,
            "--settings", json.dumps(settings, separators=(",", ":")),
            *self.extra_args,
            request.message,
        ]
        return argv

    def is_busy(self, conversation_id: str) -> bool:
        return self.registry.is_running(conversation_id)

    def cancel(self, conversation_id: str) -> bool:
        return self.registry.signal(conversation_id)

    def _publish(self, event: AssistantEvent) -> None:
        self.bus.publish(assistant_key(event.conversation_id), event)

    def _write_mcp_config(self, request: AssistantRequest, cwd: Optional[str]) -> Optional[Path]:
        mcp_config = build_mcp_config(request.integrations)
        if mcp_config is None:
            return None
        path = Path(cwd or tempfile.gettempdir()) / f"{MCP_CONFIG_PREFIX}{request.conversation_id}.json"
        try:
            path.write_text(json.dumps(mcp_config, indent=2), encoding="utf-8")
        except OSError as e:
            raise SpawnError(f"Failed to write MCP config: {e}") from e
        return path

    async def send(self, request: AssistantRequest) -> AssistantResult:
        """
        Run one turn and return the accumulated reply.

        Raises:
            SpawnError: The CLI could not be started (missing, bad directory).
            AlreadyRegistered: A turn for this conversation is already running.
            AssistantCancelled: The turn was cancelled through the registry.
            AssistantError: Non-zero exit or an error reported in the stream.
        """
        conversation_id = request.conversation_id
        cwd = resolve_working_directory(request.working_directory) if request.working_directory else None
        if cwd is not None and not os.path.isdir(cwd):
            raise SpawnError(f"Working directory does not exist: {cwd}")
        if self.registry.is_running(conversation_id):
            raise AlreadyRegistered(conversation_id)

        scoped_env = build_integration_env(request.integrations)
        config_path = self._write_mcp_config(request, cwd)
        argv = self.build_command(request, config_path)
        parser = StreamParser(conversation_id)

        logger.info(
            "Assistant turn for %s (resume=%s, integrations=%d)",
            conversation_id, request.session_id or "-", len(request.integrations),
        )
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=cwd,
                    env=(os.environ | scoped_env) if scoped_env else None,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                    limit=_STREAM_LIMIT,
                )
            except OSError as e:
                raise SpawnError(f"Failed to spawn {self.command}: {e}") from e

            try:
                handle = self.registry.register(conversation_id, proc, kind=KIND_ASSISTANT)
            except AlreadyRegistered:
                signal_process_group(proc, signal.SIGKILL)
                await proc.wait()
                raise

            stderr_task = asyncio.ensure_future(proc.stderr.read())
            try:
                while True:
                    try:
                        raw = await proc.stdout.readline()
                    except ValueError:
                        logger.warning("Assistant output line for %s exceeded the stream limit", conversation_id)
                        continue
                    if not raw:
                        break
                    for event in parser.feed(raw.decode("utf-8", errors="replace")):
                        self._publish(event)
                await wait_with_escalation(proc, handle, self.grace_seconds)
                stderr_output = (await stderr_task).decode("utf-8", errors="replace")
            except asyncio.CancelledError:
                handle.terminate()
                stderr_task.cancel()
                raise
            finally:
                self.registry.unregister(conversation_id, handle)
        finally:
            if config_path is not None:
                try:
                    config_path.unlink()
                except OSError as e:
                    logger.debug("Could not remove MCP config %s: %s", config_path, e)

        error = self._classify_failure(parser, handle.cancelled, proc.returncode, stderr_output)
        if error is not None:
            self._publish(ErrorEvent(conversation_id, str(error)))
            logger.warning("Assistant turn for %s failed: %s", conversation_id, error)
            raise error

        tokens = parser.tokens_used or None
        self._publish(CompletedEvent(conversation_id, session_id=parser.session_id, tokens_used=tokens))
        logger.info("Assistant turn for %s complete (session=%s, tokens=%s)",
                    conversation_id, parser.session_id, tokens)
        return AssistantResult(
            response=parser.response.strip(),
            session_id=parser.session_id,
            tokens_used=tokens,
        )

    @staticmethod
    def _classify_failure(parser: StreamParser, cancelled: bool, returncode: int,
                          stderr_output: str) -> Optional[AssistantError]:
        if cancelled:
            return AssistantCancelled("Cancelled")
        if returncode != 0:
            if parser.error:
                return AssistantError(parser.error)
            if stderr_output.strip():
                return AssistantError(f"Claude error: {stderr_output.strip()}")
            return AssistantError(f"Claude exited with status: {returncode}")
        if parser.error:
            return AssistantError(parser.error)
        if not parser.got_result and not parser.parts:
            return AssistantError("Malformed assistant output: no result received")
        return None


# =============================================================================
# Module-level convenience API
# =============================================================================

_default_manager: Optional[AssistantSessionManager] = None


def get_session_manager() -> AssistantSessionManager:
    global _default_manager
    if _default_manager is None:
        _default_manager = AssistantSessionManager()
    return _default_manager


async def send_to_assistant(
    conversation_id: str,
    message: str,
    system_prompt: Optional[str] = None,
    working_directory: Optional[str] = None,
    integrations: Optional[Sequence[IntegrationConfig]] = None,
    session_id: Optional[str] = None,
    *,
    manager: Optional[AssistantSessionManager] = None,
) -> AssistantResult:
    request = AssistantRequest(
        conversation_id=conversation_id,
        message=message,
        system_prompt=system_prompt,
        working_directory=working_directory,
        integrations=list(integrations or []),
        session_id=session_id,
    )
    return await (manager or get_session_manager()).send(request)


def check_assistant_installed(command: str = DEFAULT_ASSISTANT_COMMAND) -> bool:
    """True if the assistant CLI is on PATH (or ``command`` is an executable path)."""
    return shutil.which(command) is not None
