"""
Quest storage.

A quest is one long-lived assistant conversation bound to a working
directory, with its own message history, equipped skills and integrations,
background service definitions, and the assistant session id used to
continue the conversation on the next turn.

Everything lives in ~/.quest/quests.json, rewritten after each change.
"""

import json
import logging
import os
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from agent.claude_session import IntegrationConfig
from quest_cli.config import get_quest_home
from tools.errors import QuestError

logger = logging.getLogger(__name__)

# UI policy: the service panel shows at most this many services per quest.
MAX_SERVICES_PER_QUEST = 4

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


def get_quests_file() -> Path:
    return get_quest_home() / "quests.json"


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class QuestNotFound(QuestError):
    def __init__(self, quest_id: str):
        super().__init__(f"Quest not found: {quest_id}")
        self.quest_id = quest_id


@dataclass
class Message:
    id: str
    role: str                   # "user" | "assistant"
    content: str
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "role": self.role, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data.get("id") or _new_id(),
            role=data["role"],
            content=data.get("content", ""),
            timestamp=data.get("timestamp") or datetime.now().isoformat(),
        )


@dataclass
class ServiceDefinition:
    id: str
    name: str
    command: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "command": self.command}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceDefinition":
        return cls(id=data["id"], name=data.get("name", data["id"]), command=data["command"])


@dataclass
class Skill:
    """A named block of system-prompt text that can be equipped on a quest."""
    id: str
    name: str
    effect: str
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "effect": self.effect, "description": self.description}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Skill":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            effect=data.get("effect", ""),
            description=data.get("description", ""),
        )


@dataclass
class Quest:
    id: str
    title: str
    working_directory: str = "~"
    messages: List[Message] = field(default_factory=list)
    equipped_skills: List[str] = field(default_factory=list)
    equipped_integrations: List[str] = field(default_factory=list)
    services: List[ServiceDefinition] = field(default_factory=list)
    session_id: Optional[str] = None
    tokens_used: int = 0
    closed: bool = False
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def get_service(self, service_id: str) -> Optional[ServiceDefinition]:
        for service in self.services:
            if service.id == service_id:
                return service
        return None

    def touch(self):
        self.updated_at = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "working_directory": self.working_directory,
            "messages": [m.to_dict() for m in self.messages],
            "equipped_skills": list(self.equipped_skills),
            "equipped_integrations": list(self.equipped_integrations),
            "services": [s.to_dict() for s in self.services],
            "session_id": self.session_id,
            "tokens_used": self.tokens_used,
            "closed": self.closed,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Quest":
        now = datetime.now().isoformat()
        return cls(
            id=data["id"],
            title=data.get("title", "Untitled quest"),
            working_directory=data.get("working_directory") or "~",
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            equipped_skills=list(data.get("equipped_skills", [])),
            equipped_integrations=list(data.get("equipped_integrations", [])),
            services=[ServiceDefinition.from_dict(s) for s in data.get("services", [])],
            session_id=data.get("session_id"),
            tokens_used=int(data.get("tokens_used") or 0),
            closed=bool(data.get("closed", False)),
            created_at=data.get("created_at", now),
            updated_at=data.get("updated_at", now),
        )


class QuestStore:
    """
    In-memory quest state with a JSON snapshot on disk.

    Loaded once on construction; every mutating call rewrites the snapshot.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else get_quests_file()
        self._lock = threading.RLock()
        self._quests: Dict[str, Quest] = {}
        self._skills: Dict[str, Skill] = {}
        self._integrations: Dict[str, IntegrationConfig] = {}
        self.total_tokens_used = 0
        self._load()

    # ----- Persistence -----

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load quests from %s: %s", self.path, e)
            return

        for raw in data.get("quests", []):
            try:
                quest = Quest.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping invalid quest record: %s", e)
                continue
            self._quests[quest.id] = quest
        for raw in data.get("skills", []):
            skill = Skill.from_dict(raw)
            self._skills[skill.id] = skill
        for raw in data.get("integrations", []):
            integ = IntegrationConfig.from_dict(raw)
            self._integrations[integ.id] = integ
        self.total_tokens_used = int(data.get("total_tokens_used") or 0)

    def save(self) -> None:
        with self._lock:
            payload = {
                "quests": [q.to_dict() for q in self._quests.values()],
                "skills": [s.to_dict() for s in self._skills.values()],
                "integrations": [i.to_dict() for i in self._integrations.values()],
                "total_tokens_used": self.total_tokens_used,
                "updated_at": datetime.now().isoformat(),
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp", prefix=".quests_")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise

    # ----- Quests -----

    def create_quest(self, title: str, working_directory: str = "~") -> Quest:
        with self._lock:
            quest = Quest(id=_new_id(), title=title, working_directory=working_directory)
            self._quests[quest.id] = quest
            self.save()
        logger.info("Created quest %s (%s) in %s", quest.id, title, working_directory)
        return quest

    def get(self, quest_id: str) -> Optional[Quest]:
        with self._lock:
            return self._quests.get(quest_id)

    def require(self, quest_id: str) -> Quest:
        quest = self.get(quest_id)
        if quest is None:
            raise QuestNotFound(quest_id)
        return quest

    def list(self, include_closed: bool = True) -> List[Quest]:
        with self._lock:
            quests = list(self._quests.values())
        if not include_closed:
            quests = [q for q in quests if not q.closed]
        return quests

    def delete_quest(self, quest_id: str) -> bool:
        with self._lock:
            if self._quests.pop(quest_id, None) is None:
                return False
            self.save()
        return True

    def close_quest(self, quest_id: str, closed: bool = True) -> Quest:
        with self._lock:
            quest = self.require(quest_id)
            quest.closed = closed
            quest.touch()
            self.save()
        return quest

    def add_message(self, quest_id: str, role: str, content: str) -> Message:
        with self._lock:
            quest = self.require(quest_id)
            message = Message(id=_new_id(), role=role, content=content)
            quest.messages.append(message)
            quest.touch()
            self.save()
        return message

    def set_session_id(self, quest_id: str, session_id: Optional[str]) -> None:
        with self._lock:
            quest = self.require(quest_id)
            quest.session_id = session_id
            self.save()

    def add_tokens(self, quest_id: str, tokens: int) -> None:
        """Add a turn's token usage to the quest and the global total."""
        if not tokens:
            return
        with self._lock:
            quest = self.require(quest_id)
            quest.tokens_used += tokens
            self.total_tokens_used += tokens
            self.save()

    def clear_history(self, quest_id: str) -> Quest:
        """Forget messages, token count and the session id (next turn starts fresh)."""
        with self._lock:
            quest = self.require(quest_id)
            quest.messages = []
            quest.tokens_used = 0
            quest.session_id = None
            quest.touch()
            self.save()
        return quest

    # ----- Services -----

    def add_service(self, quest_id: str, name: str, command: str) -> ServiceDefinition:
        with self._lock:
            quest = self.require(quest_id)
            if len(quest.services) >= MAX_SERVICES_PER_QUEST:
                raise QuestError(f"A quest can have at most {MAX_SERVICES_PER_QUEST} services")
            service = ServiceDefinition(id=_new_id(), name=name, command=command)
            quest.services.append(service)
            self.save()
        return service

    def remove_service(self, quest_id: str, service_id: str) -> bool:
        with self._lock:
            quest = self.require(quest_id)
            before = len(quest.services)
            quest.services = [s for s in quest.services if s.id != service_id]
            if len(quest.services) == before:
                return False
            self.save()
        return True

    # ----- Skills & integrations -----

    def add_skill(self, name: str, effect: str, description: str = "") -> Skill:
        with self._lock:
            skill = Skill(id=_new_id(), name=name, effect=effect, description=description)
            self._skills[skill.id] = skill
            self.save()
        return skill

    def list_skills(self) -> List[Skill]:
        with self._lock:
            return list(self._skills.values())

    def add_integration(self, integration: IntegrationConfig) -> IntegrationConfig:
        with self._lock:
            self._integrations[integration.id] = integration
            self.save()
        return integration

    def list_integrations(self) -> List[IntegrationConfig]:
        with self._lock:
            return list(self._integrations.values())

    def equip(self, quest_id: str, skill_id: Optional[str] = None,
              integration_id: Optional[str] = None, equipped: bool = True) -> Quest:
        """Equip (or with ``equipped=False`` unequip) a skill and/or integration."""
        with self._lock:
            quest = self.require(quest_id)
            for item_id, known, slot in (
                (skill_id, self._skills, quest.equipped_skills),
                (integration_id, self._integrations, quest.equipped_integrations),
            ):
                if item_id is None:
                    continue
                if item_id not in known:
                    raise QuestError(f"Unknown skill or integration: {item_id}")
                if equipped and item_id not in slot:
                    slot.append(item_id)
                elif not equipped and item_id in slot:
                    slot.remove(item_id)
            self.save()
        return quest

    def equipped_skills(self, quest: Quest) -> List[Skill]:
        with self._lock:
            return [self._skills[s] for s in quest.equipped_skills if s in self._skills]

    def equipped_integrations(self, quest: Quest) -> List[IntegrationConfig]:
        """Equipped integrations that are still enabled."""
        with self._lock:
            return [
                self._integrations[i] for i in quest.equipped_integrations
                if i in self._integrations and self._integrations[i].enabled
            ]
