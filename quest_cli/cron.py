"""
Cron subcommand for quest CLI.

Handles: quest cron [list|add|show|enable|disable|remove|run|daemon]

Tasks only fire while a scheduler is running:
    quest cron daemon
"""

import asyncio
import logging
import signal
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from agent.display import strip_ansi
from cron.jobs import TASK_PROMPT, TaskStore, create_task, format_interval, parse_interval
from quest_cli.config import load_config
from tools.errors import QuestError

logger = logging.getLogger(__name__)

_console = Console()

# How often the daemon checks the task file for edits made by other commands.
STORE_POLL_SECONDS = 5.0


def _require_task(store: TaskStore, task_id: str):
    task = store.get(task_id)
    if task is None:
        raise QuestError(f"No such task: {task_id}")
    return task


def cron_list(store: TaskStore, show_all: bool = True, console: Optional[Console] = None) -> None:
    c = console or _console
    tasks = store.list(include_disabled=show_all)
    if not tasks:
        c.print("[dim]No scheduled tasks.[/]")
        c.print("[dim]Create one with: quest cron add <name> <command> --every 30m[/]")
        return

    table = Table(title="Scheduled Tasks")
    table.add_column("ID", style="bold yellow")
    table.add_column("Name", style="bold cyan")
    table.add_column("Type", style="dim")
    table.add_column("Schedule")
    table.add_column("Status")
    table.add_column("Last run", style="dim")
    table.add_column("Result")
    for task in tasks:
        status = "[green]active[/]" if task.enabled else "[red]disabled[/]"
        if task.last_status is None:
            result = "[dim]-[/]"
        elif task.last_status == "success":
            result = "[green]success[/]"
        else:
            result = "[red]error[/]"
        if task.has_new_output:
            result += " [bold magenta]*[/]"
        table.add_row(
            task.id, task.name, task.type, format_interval(task.interval_minutes),
            status, (task.last_run or "never")[:19], result,
        )
    c.print(table)


def cron_show(store: TaskStore, task_id: str, console: Optional[Console] = None) -> None:
    c = console or _console
    task = _require_task(store, task_id)
    lines = [
        f"Type:      {task.type}",
        f"Command:   {task.command}",
        f"Schedule:  {format_interval(task.interval_minutes)}",
        f"Enabled:   {task.enabled}",
        f"Last run:  {task.last_run or 'never'}",
        f"Status:    {task.last_status or '-'}",
    ]
    if task.type == TASK_PROMPT and task.conversation_ids:
        lines.append(f"Quests:    {', '.join(task.conversation_ids)}")
    elif task.working_directory:
        lines.append(f"Directory: {task.working_directory}")
    c.print(Panel("\n".join(lines), title=f"Task: {task.name}"))
    if task.last_output:
        c.print(Panel(Text(strip_ansi(task.last_output)), title="Last output"))
    store.mark_seen(task.id)


def cron_run(store: TaskStore, task_id: str, console: Optional[Console] = None) -> bool:
    """Run a task once right now, outside its schedule."""
    from quests.runtime import QuestRuntime

    c = console or _console
    task = _require_task(store, task_id)
    runtime = QuestRuntime(tasks=store, config=load_config())
    c.print(f"[dim]Running {task.name}...[/]")
    asyncio.run(runtime.scheduler.run_task(task, force=True))
    cron_show(store, task.id, console=c)
    updated = store.get(task.id)
    return updated is not None and updated.last_status == "success"


async def _run_daemon(store: TaskStore, console: Console) -> None:
    from quests.runtime import QuestRuntime

    runtime = QuestRuntime(tasks=store, config=load_config())
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    def _mtime() -> float:
        try:
            return store.path.stat().st_mtime
        except FileNotFoundError:
            return 0.0

    count = runtime.scheduler.start()
    armed = {(t.id, t.interval_minutes) for t in store.list(include_disabled=False)}
    console.print(f"[green]Scheduler running with {count} enabled task(s).[/] [dim]Ctrl-C to stop.[/]")
    seen = _mtime()
    try:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), STORE_POLL_SECONDS)
            except asyncio.TimeoutError:
                pass
            current = _mtime()
            # Our own run recordings also touch the file; only re-arm when
            # the set of enabled tasks or their schedules changed.
            if current != seen:
                seen = current
                current_armed = {(t.id, t.interval_minutes) for t in store.list(include_disabled=False)}
                if current_armed != armed:
                    armed = current_armed
                    runtime.scheduler.reconcile()
                    logger.info("Task store changed, re-armed %d task(s)", len(armed))
    finally:
        await runtime.shutdown()
        console.print("[dim]Scheduler stopped.[/]")


def cron_command(args, console: Optional[Console] = None) -> int:
    c = console or _console
    store = TaskStore()
    sub = getattr(args, "cron_command", None) or "list"

    if sub == "list":
        cron_list(store, show_all=not getattr(args, "active", False), console=c)
    elif sub == "add":
        try:
            interval = parse_interval(args.every)
            task = create_task(
                name=args.name,
                command=args.task_command,
                interval_minutes=interval,
                type=TASK_PROMPT if args.prompt else "cli",
                working_directory=args.cwd,
                conversation_ids=args.quest or [],
                enabled=not args.disabled,
            )
        except ValueError as e:
            raise QuestError(str(e)) from e
        store.add(task)
        c.print(f"[green]✓[/] Added task [bold]{task.name}[/] ({task.id}), {format_interval(interval)}")
    elif sub == "show":
        cron_show(store, args.task_id, console=c)
    elif sub in ("enable", "disable"):
        _require_task(store, args.task_id)
        store.update(args.task_id, enabled=(sub == "enable"))
        c.print(f"[green]✓[/] Task {args.task_id} {sub}d")
    elif sub == "remove":
        if not store.remove(args.task_id):
            raise QuestError(f"No such task: {args.task_id}")
        c.print(f"[green]✓[/] Removed task {args.task_id}")
    elif sub == "run":
        return 0 if cron_run(store, args.task_id, console=c) else 1
    elif sub == "daemon":
        asyncio.run(_run_daemon(store, c))
    return 0
