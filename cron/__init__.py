"""
Recurring task scheduling for quests.

Tasks run a shell command or send a prompt to the assistant every N minutes.
The scheduler lives inside a long-running process:
    quest cron daemon         # run timers in the foreground

Tasks are stored in ~/.quest/cron/tasks.json.
"""

from cron.jobs import (
    ScheduledTask,
    TaskStore,
    create_task,
    parse_interval,
    TASK_CLI,
    TASK_PROMPT,
)
from cron.scheduler import Scheduler

__all__ = [
    "ScheduledTask",
    "TaskStore",
    "create_task",
    "parse_interval",
    "Scheduler",
    "TASK_CLI",
    "TASK_PROMPT",
]
