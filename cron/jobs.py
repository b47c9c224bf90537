"""
Scheduled task storage and management.

Tasks are stored in ~/.quest/cron/tasks.json as a best-effort snapshot.
Each task is either a shell command ("cli") or an assistant prompt
("prompt") that runs every ``interval_minutes``. Only the latest run is
remembered: its time, status, and the tail of its output.
"""

import json
import logging
import os
import re
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from quest_cli.config import get_quest_home

logger = logging.getLogger(__name__)

try:
    import fcntl
except ImportError:
    fcntl = None

TASK_CLI = "cli"
TASK_PROMPT = "prompt"
TASK_TYPES = (TASK_CLI, TASK_PROMPT)

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

OUTPUT_CHAR_LIMIT = 2000
STORE_LOCK_TIMEOUT_SECONDS = 15.0


def get_tasks_file() -> Path:
    return get_quest_home() / "cron" / "tasks.json"


# =============================================================================
# Interval Parsing
# =============================================================================

def parse_interval(s: str) -> int:
    """
    Parse an interval string into minutes.

    Examples:
        "30"  → 30
        "30m" → 30
        "2h"  → 120
        "1d"  → 1440
    """
    s = s.strip().lower()
    if s.startswith("every "):
        s = s[6:].strip()
    match = re.match(r'^(\d+)\s*(m|min|mins|minute|minutes|h|hr|hrs|hour|hours|d|day|days)?$', s)
    if not match:
        raise ValueError(f"Invalid interval: '{s}'. Use format like '30m', '2h', or '1d'")
    value = int(match.group(1))
    unit = (match.group(2) or "m")[0]
    minutes = value * {'m': 1, 'h': 60, 'd': 1440}[unit]
    if minutes < 1:
        raise ValueError("Interval must be at least 1 minute")
    return minutes


def format_interval(minutes: int) -> str:
    if minutes % 1440 == 0:
        return f"every {minutes // 1440}d"
    if minutes % 60 == 0:
        return f"every {minutes // 60}h"
    return f"every {minutes}m"


# =============================================================================
# Task Record
# =============================================================================

@dataclass
class ScheduledTask:
    """A recurring shell command or assistant prompt."""
    id: str
    name: str
    command: str
    type: str = TASK_CLI
    interval_minutes: int = 60
    working_directory: Optional[str] = None     # cli: defaults to "~"
    conversation_ids: List[str] = field(default_factory=list)  # prompt: context quests
    enabled: bool = True
    last_run: Optional[str] = None
    last_output: Optional[str] = None
    last_status: Optional[str] = None           # "success" | "error"
    has_new_output: bool = False
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def __post_init__(self):
        if self.type not in TASK_TYPES:
            raise ValueError(f"Unknown task type: {self.type!r} (expected 'cli' or 'prompt')")
        if isinstance(self.interval_minutes, bool) or not isinstance(self.interval_minutes, int):
            raise ValueError(f"interval_minutes must be an integer, got {self.interval_minutes!r}")
        if self.interval_minutes < 1:
            raise ValueError("interval_minutes must be at least 1")

    @property
    def interval_seconds(self) -> int:
        return self.interval_minutes * 60

    def record_run(self, output: str, success: bool, limit: int = OUTPUT_CHAR_LIMIT):
        self.last_run = datetime.now().isoformat()
        self.last_output = output[-limit:] if limit > 0 else output
        self.last_status = STATUS_SUCCESS if success else STATUS_ERROR
        self.has_new_output = True

    def mark_seen(self):
        self.has_new_output = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledTask":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["type"] = kwargs.get("type") or TASK_CLI
        kwargs["conversation_ids"] = list(kwargs.get("conversation_ids") or [])
        return cls(**kwargs)


def create_task(
    name: str,
    command: str,
    interval_minutes: int,
    type: str = TASK_CLI,
    working_directory: Optional[str] = None,
    conversation_ids: Optional[List[str]] = None,
    enabled: bool = True,
) -> ScheduledTask:
    """Build a new task with a fresh id (not yet stored)."""
    return ScheduledTask(
        id=uuid.uuid4().hex[:12],
        name=name or command[:50].strip(),
        command=command,
        type=type,
        interval_minutes=interval_minutes,
        working_directory=working_directory,
        conversation_ids=list(conversation_ids or []),
        enabled=enabled,
    )


# =============================================================================
# Task Store
# =============================================================================

class TaskStore:
    """
    CRUD over the JSON task snapshot.

    Every mutation is load-modify-save under a thread lock plus an advisory
    ``flock`` on ``tasks.json.lock``, so the CLI and a running daemon cannot
    overwrite each other's changes. The file is replaced atomically so a
    crash never leaves a half-written snapshot.
    """

    def __init__(self, path: Optional[Path] = None,
                 lock_timeout: float = STORE_LOCK_TIMEOUT_SECONDS):
        self.path = Path(path) if path else get_tasks_file()
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()

    @contextmanager
    def _locked(self):
        with self._lock:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            with self.lock_path.open("a+") as lock_file:
                if fcntl is None:
                    yield
                    return

                deadline = time.time() + self.lock_timeout
                while True:
                    try:
                        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if time.time() >= deadline:
                            raise TimeoutError(f"Timed out waiting for task store lock {self.lock_path}")
                        time.sleep(0.05)

                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def load(self) -> List[ScheduledTask]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not read task store %s: %s", self.path, e)
            return []

        tasks = []
        for raw in data.get("tasks", []):
            try:
                tasks.append(ScheduledTask.from_dict(raw))
            except (TypeError, ValueError, KeyError) as e:
                logger.warning("Skipping invalid task record %r: %s", raw.get("id"), e)
        return tasks

    def save(self, tasks: List[ScheduledTask]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix='.tmp', prefix='.tasks_')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(
                    {"tasks": [t.to_dict() for t in tasks], "updated_at": datetime.now().isoformat()},
                    f, indent=2,
                )
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def list(self, include_disabled: bool = True) -> List[ScheduledTask]:
        tasks = self.load()
        if not include_disabled:
            tasks = [t for t in tasks if t.enabled]
        return tasks

    def get(self, task_id: str) -> Optional[ScheduledTask]:
        for task in self.load():
            if task.id == task_id:
                return task
        return None

    def add(self, task: ScheduledTask) -> ScheduledTask:
        with self._locked():
            tasks = self.load()
            if any(t.id == task.id for t in tasks):
                raise ValueError(f"Task already exists: {task.id}")
            tasks.append(task)
            self.save(tasks)
        return task

    def update(self, task_id: str, **changes) -> Optional[ScheduledTask]:
        """Apply field changes (validated) and return the updated task."""
        allowed = {f.name for f in fields(ScheduledTask)} - {"id"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        with self._locked():
            tasks = self.load()
            for i, task in enumerate(tasks):
                if task.id == task_id:
                    tasks[i] = replace(task, **changes)
                    self.save(tasks)
                    return tasks[i]
        return None

    def remove(self, task_id: str) -> bool:
        with self._locked():
            tasks = self.load()
            remaining = [t for t in tasks if t.id != task_id]
            if len(remaining) == len(tasks):
                return False
            self.save(remaining)
        return True

    def record_run(self, task_id: str, output: str, success: bool,
                   limit: int = OUTPUT_CHAR_LIMIT) -> Optional[ScheduledTask]:
        """Store the outcome of a run. A task deleted mid-run is not resurrected."""
        with self._locked():
            tasks = self.load()
            for task in tasks:
                if task.id == task_id:
                    task.record_run(output, success, limit)
                    self.save(tasks)
                    return task
        return None

    def mark_seen(self, task_id: str) -> bool:
        with self._locked():
            tasks = self.load()
            for task in tasks:
                if task.id == task_id:
                    task.mark_seen()
                    self.save(tasks)
                    return True
        return False
