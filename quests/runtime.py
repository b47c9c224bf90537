"""
Quest runtime -- the one object a front end (the CLI, a UI) talks to.

Wires the quest store to the process layer: assistant turns for a quest use
its working directory, equipped skills/integrations and stored session id;
terminal commands and services run in the quest's directory; scheduled
tasks can post their results into a quest.
"""

import functools
import logging
import time
from typing import Any, Dict, List, Optional

from agent.claude_session import AssistantRequest, AssistantSessionManager
from agent.prompt_builder import build_system_prompt
from agent.redact import register_secrets
from cron.jobs import TaskStore
from cron.scheduler import Scheduler
from quests.store import ROLE_ASSISTANT, ROLE_USER, Message, QuestStore
from tools.errors import QuestError
from tools.events import EventBus, event_bus
from tools.process_registry import KIND_ASSISTANT, KIND_SHELL, ProcessRegistry, process_registry
from tools.service_runner import MAX_OUTPUT_LINES, ServiceRunner, ServiceRunState
from tools.shell_executor import TERMINATE_GRACE_SECONDS, ShellResult, run_shell_command

logger = logging.getLogger(__name__)


class QuestRuntime:
    def __init__(
        self,
        quests: Optional[QuestStore] = None,
        tasks: Optional[TaskStore] = None,
        config: Optional[Dict[str, Any]] = None,
        registry: Optional[ProcessRegistry] = None,
        bus: Optional[EventBus] = None,
        assistant: Optional[AssistantSessionManager] = None,
    ):
        config = config or {}
        self.config = config
        self.registry = registry or process_registry
        self.bus = bus if bus is not None else event_bus
        self.quests = quests or QuestStore()
        self.tasks = tasks or TaskStore()
        self.grace_seconds = config.get("shell", {}).get("terminate_grace_seconds", TERMINATE_GRACE_SECONDS)

        self.assistant = assistant or AssistantSessionManager.from_config(
            config, registry=self.registry, bus=self.bus
        )
        self.services = ServiceRunner(
            registry=self.registry,
            bus=self.bus,
            max_output_lines=config.get("services", {}).get("max_output_lines", MAX_OUTPUT_LINES),
            grace_seconds=self.grace_seconds,
        )
        self.scheduler = Scheduler.from_config(
            self.tasks,
            config,
            shell_runner=functools.partial(
                run_shell_command, registry=self.registry, grace_seconds=self.grace_seconds
            ),
            assistant=self.assistant,
            quests=self.quests,
        )

    # ----- Assistant -----

    async def send_message(self, quest_id: str, text: str) -> Message:
        """
        Send ``text`` as the next turn of quest ``quest_id``.

        Records the user message, then the assistant's reply, or an
        ``Error: ...`` assistant message when the turn failed. Returns the
        recorded assistant message.
        """
        quest = self.quests.require(quest_id)
        if quest.closed:
            raise QuestError(f"Quest is closed: {quest.title}")

        skills = self.quests.equipped_skills(quest)
        integrations = self.quests.equipped_integrations(quest)
        register_secrets(i.api_key for i in integrations if i.api_key)

        self.quests.add_message(quest_id, ROLE_USER, text)
        request = AssistantRequest(
            conversation_id=quest.id,
            message=text,
            system_prompt=build_system_prompt(skills, integrations),
            working_directory=quest.working_directory,
            integrations=integrations,
            session_id=quest.session_id,
        )
        try:
            result = await self.assistant.send(request)
        except QuestError as e:
            logger.warning("Quest %s turn failed: %s", quest_id, e)
            return self.quests.add_message(quest_id, ROLE_ASSISTANT, f"Error: {e}")

        if result.session_id:
            self.quests.set_session_id(quest_id, result.session_id)
        if result.tokens_used:
            self.quests.add_tokens(quest_id, result.tokens_used)
        return self.quests.add_message(quest_id, ROLE_ASSISTANT, result.response)

    def cancel_message(self, quest_id: str) -> bool:
        return self.assistant.cancel(quest_id)

    # ----- Terminal -----

    async def run_terminal(self, quest_id: str, command: str, token: Optional[str] = None) -> ShellResult:
        """Run a terminal command in the quest's working directory."""
        quest = self.quests.require(quest_id)
        token = token or f"terminal-{quest_id}-{int(time.time() * 1000)}"
        return await run_shell_command(
            token,
            command,
            quest.working_directory,
            registry=self.registry,
            bus=self.bus,
            grace_seconds=self.grace_seconds,
        )

    def cancel(self, token: str) -> bool:
        """Cancel any in-flight unit (command, service, assistant turn) by token."""
        return self.registry.signal(token)

    # ----- Services -----

    async def start_quest_service(self, quest_id: str, service_id: str) -> ServiceRunState:
        quest = self.quests.require(quest_id)
        service = quest.get_service(service_id)
        if service is None:
            raise QuestError(f"Quest {quest.title} has no service {service_id}")
        return await self.services.start(service.id, service.command, quest.working_directory)

    def stop_quest_service(self, quest_id: str, service_id: str) -> bool:
        quest = self.quests.require(quest_id)
        if quest.get_service(service_id) is None:
            raise QuestError(f"Quest {quest.title} has no service {service_id}")
        return self.services.stop(service_id)

    async def remove_quest_service(self, quest_id: str, service_id: str) -> bool:
        """Stop the service if it is running, then drop its definition and run state."""
        if self.services.stop(service_id):
            await self.services.wait(service_id)
        removed = self.quests.remove_service(quest_id, service_id)
        self.services.forget(service_id)
        return removed

    def reconcile_services(self) -> List[str]:
        """
        Running service ids that still belong to a defined quest service.
        Finished runs of services no longer defined anywhere are forgotten.
        """
        defined = {s.id for q in self.quests.list() for s in q.services}
        for sid in self.services.known_ids():
            if sid not in defined:
                self.services.forget(sid)
        return [sid for sid in self.services.list_running() if sid in defined]

    # ----- Lifecycle -----

    def start(self) -> None:
        self.scheduler.start()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.services.stop_all()
        killed = self.registry.kill_all(KIND_SHELL) + self.registry.kill_all(KIND_ASSISTANT)
        if killed:
            logger.info("Terminated %d in-flight process(es) on shutdown", killed)
