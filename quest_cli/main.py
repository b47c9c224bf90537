#!/usr/bin/env python3
"""
Quest CLI - Main entry point.

Usage:
    quest run "npm test" --cwd ~/site      # Run a command, streaming output
    quest ask "explain main.py"            # One assistant turn
    quest ask "and now?" --session <id>    # Continue a session
    quest ask "status?" --quest <id>       # Turn inside a stored quest
    quest service "npm run dev"            # Run a service until Ctrl-C
    quest quests list|new|show|add-service # Manage quests
    quest cron list|add|show|enable|disable|remove|run|daemon
    quest ls [path]                        # List a directory
    quest config show|set|path             # View and edit configuration
    quest doctor                           # Check dependencies
    quest --version
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import time
from typing import Any, Callable, Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text

from quest_cli import __version__
from quest_cli.config import (
    get_config_path,
    get_env_path,
    load_config,
    load_env_file,
    set_config_value,
    setup_logging,
)
from tools.errors import QuestError

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)


async def _follow(sub, task: asyncio.Future, on_event: Callable[[Any], None]) -> Any:
    """Feed ``sub``'s events to ``on_event`` until ``task`` finishes; return its result."""
    while True:
        getter = asyncio.ensure_future(sub.get())
        done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
        if getter in done:
            on_event(getter.result())
            continue
        getter.cancel()
        for event in sub.pending():
            on_event(event)
        return task.result()


def _write_raw(text: str, is_stderr: bool = False):
    stream = sys.stderr if is_stderr else sys.stdout
    stream.write(text)
    stream.flush()


# =============================================================================
# run
# =============================================================================

async def _run_command(args, config) -> int:
    from tools.events import event_bus, shell_key
    from tools.shell_executor import kill_shell_process, run_shell_command

    token = f"cli-{os.getpid()}-{int(time.time() * 1000)}"
    grace = config["shell"]["terminate_grace_seconds"]
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, kill_shell_process, token)

    with event_bus.subscribe(shell_key(token)) as sub:
        runner = asyncio.ensure_future(
            run_shell_command(token, args.shell_command, args.cwd, bus=event_bus, grace_seconds=grace)
        )

        def on_event(event):
            if event.text:
                _write_raw(event.text, event.is_stderr)

        result = await _follow(sub, runner, on_event)

    if result.cancelled:
        err_console.print("[yellow]^C cancelled[/]")
    return result.exit_code


def cmd_run(args):
    """Run one shell command the way quest terminals do."""
    return asyncio.run(_run_command(args, load_config()))


# =============================================================================
# ask
# =============================================================================

async def _ask(args, config) -> int:
    from agent.claude_session import AssistantRequest, AssistantSessionManager
    from agent.display import Spinner, StreamingReply, format_tokens
    from tools.events import assistant_key, event_bus

    manager = AssistantSessionManager.from_config(config)
    runtime = None
    if args.quest:
        from quests.runtime import QuestRuntime
        runtime = QuestRuntime(config=config, assistant=manager)
        conversation_id = runtime.quests.require(args.quest).id
    else:
        conversation_id = args.conversation or f"cli-{os.getpid()}"

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, manager.cancel, conversation_id)

    reply = StreamingReply()
    spinner = Spinner("thinking")
    spinner.start()
    printed = 0

    def on_event(event):
        nonlocal printed
        reply.apply(event)
        if reply.thinking and not reply.content:
            spinner.update_text(reply.thinking[:60])
        if len(reply.content) > printed:
            if spinner.running:
                spinner.stop()
            _write_raw(reply.content[printed:])
            printed = len(reply.content)

    with event_bus.subscribe(assistant_key(conversation_id)) as sub:
        if runtime is not None:
            turn = asyncio.ensure_future(runtime.send_message(args.quest, args.message))
        else:
            turn = asyncio.ensure_future(manager.send(AssistantRequest(
                conversation_id=conversation_id,
                message=args.message,
                system_prompt=args.system_prompt,
                working_directory=args.cwd,
                session_id=args.session,
            )))
        try:
            outcome = await _follow(sub, turn, on_event)
        finally:
            if spinner.running:
                spinner.stop()

    if printed:
        _write_raw("\n")
    if runtime is not None:
        if outcome.content.startswith("Error: "):
            err_console.print(Text(outcome.content, style="red"))
            return 1
        if not printed:
            console.print(Text(outcome.content))
        return 0

    if not printed and outcome.response:
        console.print(Text(outcome.response))
    details = []
    if outcome.session_id:
        details.append(f"session {outcome.session_id}")
    if outcome.tokens_used:
        details.append(f"{format_tokens(outcome.tokens_used)} tokens")
    if details:
        err_console.print(f"[dim]{' · '.join(details)}[/]")
    return 0


def cmd_ask(args):
    """Send one message to the assistant and stream the reply."""
    return asyncio.run(_ask(args, load_config()))


# =============================================================================
# service
# =============================================================================

async def _service(args, config) -> int:
    from agent.display import service_exit_line
    from tools.events import event_bus, service_key
    from tools.service_runner import ServiceRunner

    runner = ServiceRunner(
        max_output_lines=config["services"]["max_output_lines"],
        grace_seconds=config["shell"]["terminate_grace_seconds"],
    )
    if args.quest:
        from quests.runtime import QuestRuntime
        runtime = QuestRuntime(config=config)
        runner = runtime.services
        quest = runtime.quests.require(args.quest)
        service = quest.get_service(args.service_command)
        if service is None:
            raise QuestError(f"Quest {quest.title} has no service {args.service_command}")
        service_id, command, cwd = service.id, service.command, quest.working_directory
    else:
        service_id = args.name or f"cli-service-{os.getpid()}"
        command, cwd = args.service_command, args.cwd

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, runner.stop, service_id)
    loop.add_signal_handler(signal.SIGTERM, runner.stop, service_id)

    exit_code = None

    def on_event(event):
        nonlocal exit_code
        if event.is_complete:
            exit_code = event.exit_code
        elif event.is_stderr:
            err_console.print(Text(event.text, style="red"))
        else:
            console.print(Text.from_ansi(event.text))

    with event_bus.subscribe(service_key(service_id)) as sub:
        await runner.start(service_id, command, cwd)
        console.print(f"[dim]Service {service_id} started. Ctrl-C to stop.[/]")
        await _follow(sub, asyncio.ensure_future(runner.wait(service_id)), on_event)

    console.print(f"[dim]{service_exit_line(exit_code)}[/]")
    return 0 if exit_code in (0, -signal.SIGTERM) else 1


def cmd_service(args):
    """Run a background service in the foreground until it exits or Ctrl-C."""
    return asyncio.run(_service(args, load_config()))


# =============================================================================
# quests
# =============================================================================

def cmd_quests(args):
    """Quest management."""
    from agent.display import format_tokens
    from quests.store import QuestStore

    store = QuestStore()
    sub = args.quests_command or "list"
    if sub == "list":
        quests = store.list(include_closed=args.all)
        if not quests:
            console.print("[dim]No quests. Create one with: quest quests new <title> --cwd <dir>[/]")
            return 0
        table = Table(title="Quests")
        table.add_column("ID", style="bold yellow")
        table.add_column("Title", style="bold cyan")
        table.add_column("Directory", style="dim")
        table.add_column("Messages")
        table.add_column("Tokens")
        table.add_column("Services")
        for q in quests:
            title = q.title + (" [dim](closed)[/]" if q.closed else "")
            table.add_row(q.id, title, q.working_directory, str(len(q.messages)),
                          format_tokens(q.tokens_used), ", ".join(s.name for s in q.services))
        console.print(table)
        console.print(f"[dim]Total tokens: {format_tokens(store.total_tokens_used)}[/]")
    elif sub == "new":
        quest = store.create_quest(args.title, args.cwd or "~")
        console.print(f"[green]✓[/] Created quest [bold]{quest.title}[/] ({quest.id})")
    elif sub == "show":
        quest = store.require(args.quest_id)
        console.print(f"[bold cyan]{quest.title}[/] [dim]{quest.working_directory}[/]")
        for message in quest.messages[-args.last:]:
            style = "bold green" if message.role == "user" else "bold magenta"
            console.print(f"[{style}]{message.role}[/] [dim]{message.timestamp[:19]}[/]")
            console.print(Text(message.content))
            console.print()
        for service in quest.services:
            console.print(f"  [dim]service[/] {service.id} {service.name}: {service.command}")
    elif sub == "add-service":
        service = store.add_service(args.quest_id, args.name, args.service_command)
        console.print(f"[green]✓[/] Added service [bold]{service.name}[/] ({service.id})")
    elif sub == "clear":
        store.clear_history(args.quest_id)
        console.print(f"[green]✓[/] Cleared history of {args.quest_id}")
    elif sub == "close":
        store.close_quest(args.quest_id)
        console.print(f"[green]✓[/] Closed {args.quest_id}")
    return 0


# =============================================================================
# ls / config / doctor / cron / version
# =============================================================================

def cmd_ls(args):
    """List a directory the way the quest directory picker does."""
    from tools.file_tools import get_home_dir, list_directory

    path = args.path or get_home_dir()
    try:
        entries = list_directory(path)
    except OSError as e:
        raise QuestError(f"Cannot list {path}: {e}") from e
    for entry in entries:
        if entry.is_dir:
            console.print(f"[bold blue]{entry.name}/[/]", highlight=False)
        else:
            console.print(Text(entry.name))
    return 0


def cmd_config(args):
    """Configuration management."""
    import yaml

    sub = args.config_command or "show"
    if sub == "show":
        console.print(Text(yaml.dump(load_config(), default_flow_style=False, sort_keys=False)))
    elif sub == "set":
        if not args.key or args.value is None:
            raise QuestError("Usage: quest config set <key> <value>")
        path, value = set_config_value(args.key, args.value)
        console.print(f"[green]✓[/] Set {args.key} = {value!r} in {path}", highlight=False)
    elif sub == "path":
        print(get_config_path())
    elif sub == "env-path":
        print(get_env_path())
    return 0


def cmd_doctor(args):
    """Check configuration and dependencies."""
    from quest_cli.doctor import run_doctor
    return 1 if run_doctor(args) else 0


def cmd_cron(args):
    """Scheduled task management."""
    from quest_cli.cron import cron_command
    return cron_command(args)


def cmd_version(args):
    """Show version."""
    print(f"Quest v{__version__}")
    print(f"Python: {sys.version.split()[0]}")
    return 0


# =============================================================================
# Parser
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quest",
        description="Quest - orchestrate assistant sessions, shell commands, services and scheduled tasks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    quest run "ls -la" --cwd ~/code          Run a command
    quest ask "what does this repo do?"      One assistant turn
    quest service "npm run dev" --cwd ~/web  Run a dev server
    quest cron add build "make" --every 1h   Schedule a command
    quest cron daemon                        Fire scheduled tasks

For more help on a command:
    quest <command> --help
""",
    )
    parser.add_argument("--version", "-V", action="store_true", help="Show version and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log debug output to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # run
    run_parser = subparsers.add_parser("run", help="Run a shell command")
    run_parser.add_argument("shell_command", help="Command text (passed to /bin/sh -c)")
    run_parser.add_argument("--cwd", help="Working directory (default: home)")
    run_parser.set_defaults(func=cmd_run)

    # ask
    ask_parser = subparsers.add_parser("ask", help="Send a message to the assistant")
    ask_parser.add_argument("message", help="Message text")
    ask_parser.add_argument("--cwd", help="Working directory for the assistant")
    ask_parser.add_argument("--session", help="Session id to resume")
    ask_parser.add_argument("--system-prompt", dest="system_prompt", help="System prompt text")
    ask_parser.add_argument("--conversation", help="Conversation id used for cancellation and events")
    ask_parser.add_argument("--quest", help="Send as the next turn of a stored quest")
    ask_parser.set_defaults(func=cmd_ask)

    # service
    service_parser = subparsers.add_parser("service", help="Run a long-running service in the foreground")
    service_parser.add_argument("service_command", help="Command text, or a service id with --quest")
    service_parser.add_argument("--cwd", help="Working directory (default: home)")
    service_parser.add_argument("--name", help="Service id (default: derived from the pid)")
    service_parser.add_argument("--quest", help="Start a service defined on this quest")
    service_parser.set_defaults(func=cmd_service)

    # quests
    quests_parser = subparsers.add_parser("quests", help="Manage quests")
    quests_sub = quests_parser.add_subparsers(dest="quests_command")
    quests_list = quests_sub.add_parser("list", help="List quests")
    quests_list.add_argument("--all", action="store_true", help="Include closed quests")
    quests_new = quests_sub.add_parser("new", help="Create a quest")
    quests_new.add_argument("title")
    quests_new.add_argument("--cwd", help="Working directory (default: home)")
    quests_show = quests_sub.add_parser("show", help="Show a quest's recent messages")
    quests_show.add_argument("quest_id")
    quests_show.add_argument("--last", type=int, default=10, help="Number of messages to show")
    quests_service = quests_sub.add_parser("add-service", help="Define a service on a quest")
    quests_service.add_argument("quest_id")
    quests_service.add_argument("name")
    quests_service.add_argument("service_command")
    quests_clear = quests_sub.add_parser("clear", help="Clear a quest's history and session")
    quests_clear.add_argument("quest_id")
    quests_close = quests_sub.add_parser("close", help="Close a quest (read-only)")
    quests_close.add_argument("quest_id")
    quests_parser.set_defaults(func=cmd_quests, all=False)

    # cron
    cron_parser = subparsers.add_parser("cron", help="Scheduled task management")
    cron_sub = cron_parser.add_subparsers(dest="cron_command")
    cron_list = cron_sub.add_parser("list", help="List scheduled tasks")
    cron_list.add_argument("--active", action="store_true", help="Only enabled tasks")
    cron_add = cron_sub.add_parser("add", help="Add a scheduled task")
    cron_add.add_argument("name")
    cron_add.add_argument("task_command", help="Shell command, or prompt text with --prompt")
    cron_add.add_argument("--every", required=True, help="Interval, e.g. 30m, 2h, 1d")
    cron_add.add_argument("--prompt", action="store_true", help="Send to the assistant instead of the shell")
    cron_add.add_argument("--cwd", help="Working directory for shell tasks (default: ~)")
    cron_add.add_argument("--quest", action="append", help="Context quest for prompt tasks (repeatable)")
    cron_add.add_argument("--disabled", action="store_true", help="Create the task disabled")
    for name, help_text in (
        ("show", "Show a task and its last output"),
        ("enable", "Enable a task"),
        ("disable", "Disable a task"),
        ("remove", "Delete a task"),
        ("run", "Run a task once now"),
    ):
        p = cron_sub.add_parser(name, help=help_text)
        p.add_argument("task_id")
    cron_sub.add_parser("daemon", help="Run the scheduler in the foreground")
    cron_parser.set_defaults(func=cmd_cron)

    # ls
    ls_parser = subparsers.add_parser("ls", help="List a directory (hidden entries skipped)")
    ls_parser.add_argument("path", nargs="?", help="Directory (default: home)")
    ls_parser.set_defaults(func=cmd_ls)

    # config
    config_parser = subparsers.add_parser("config", help="View and edit configuration")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("show", help="Show current configuration")
    config_set = config_sub.add_parser("set", help="Set a configuration value")
    config_set.add_argument("key", nargs="?", help="Dotted key (e.g. shell.terminate_grace_seconds)")
    config_set.add_argument("value", nargs="?", help="Value to set")
    config_sub.add_parser("path", help="Print config file path")
    config_sub.add_parser("env-path", help="Print .env file path")
    config_parser.set_defaults(func=cmd_config)

    # doctor
    doctor_parser = subparsers.add_parser("doctor", help="Check configuration and dependencies")
    doctor_parser.set_defaults(func=cmd_doctor)

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point for quest CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        return cmd_version(args)
    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    load_env_file()
    try:
        setup_logging(verbose=args.verbose)
    except OSError as e:
        err_console.print(f"[yellow]Warning: file logging disabled: {e}[/]")

    try:
        return args.func(args) or 0
    except QuestError as e:
        err_console.print(Text(f"Error: {e}", style="red"))
        return 1


if __name__ == "__main__":
    sys.exit(main())
