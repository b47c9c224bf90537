"""
Doctor command for quest CLI.

Diagnoses issues with the quest setup: the assistant CLI, the shell, the
quest home directory and the stored state files.
"""

import json
import os
import shutil
import sys
from typing import Optional

import yaml
from rich.console import Console

from agent.claude_session import check_assistant_installed
from quest_cli.config import (
    get_config_path,
    get_env_path,
    get_missing_config_fields,
    get_quest_home,
    load_config,
)

_console = Console()


def check_ok(c: Console, text: str, detail: str = ""):
    c.print(f"  [green]✓[/] {text}" + (f" [dim]{detail}[/]" if detail else ""))


def check_warn(c: Console, text: str, detail: str = ""):
    c.print(f"  [yellow]⚠[/] {text}" + (f" [dim]{detail}[/]" if detail else ""))


def check_fail(c: Console, text: str, detail: str = ""):
    c.print(f"  [red]✗[/] {text}" + (f" [dim]{detail}[/]" if detail else ""))


def check_info(c: Console, text: str):
    c.print(f"    [cyan]→[/] {text}")


def _check_json_file(c: Console, label: str, path) -> bool:
    if not path.exists():
        check_ok(c, f"{label}", "(not created yet)")
        return True
    try:
        with open(path, encoding="utf-8") as f:
            json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        check_fail(c, f"{label} unreadable", str(e))
        return False
    check_ok(c, label, str(path))
    return True


def run_doctor(args=None, console: Optional[Console] = None) -> int:
    """Run diagnostic checks. Returns the number of failed checks."""
    c = console or _console
    failures = 0
    config = load_config()

    c.print()
    c.print("[bold cyan]Quest Doctor[/]")
    c.print()

    # Python
    c.print("[bold]Runtime[/]")
    if sys.version_info >= (3, 10):
        check_ok(c, f"Python {sys.version.split()[0]}")
    else:
        check_fail(c, f"Python {sys.version.split()[0]}", "(3.10+ required)")
        failures += 1
    if os.path.exists("/bin/sh"):
        check_ok(c, "Shell", "/bin/sh")
    else:
        check_fail(c, "/bin/sh not found", "(shell commands and services cannot run)")
        failures += 1

    # Assistant CLI
    c.print()
    c.print("[bold]Assistant[/]")
    command = config.get("assistant", {}).get("command", "claude")
    if check_assistant_installed(command):
        check_ok(c, f"{command} CLI installed", shutil.which(command) or "")
    else:
        check_fail(c, f"{command} CLI not found on PATH")
        check_info(c, "Install it with: npm install -g @anthropic-ai/claude-code")
        failures += 1

    # Files
    c.print()
    c.print("[bold]Configuration[/]")
    home = get_quest_home()
    if home.is_dir():
        check_ok(c, "Quest home", str(home))
    else:
        check_warn(c, "Quest home missing", f"({home} is created on first use)")

    config_path = get_config_path()
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                yaml.safe_load(f)
            check_ok(c, "config.yaml", str(config_path))
            missing = get_missing_config_fields()
            if missing:
                check_info(c, f"Using defaults for: {', '.join(missing)}")
        except (yaml.YAMLError, OSError) as e:
            check_fail(c, "config.yaml invalid", str(e))
            failures += 1
    else:
        check_ok(c, "config.yaml", "(not present, using defaults)")

    env_path = get_env_path()
    if env_path.exists():
        check_ok(c, ".env", str(env_path))

    if not _check_json_file(c, "Quest store", home / "quests.json"):
        failures += 1
    if not _check_json_file(c, "Task store", home / "cron" / "tasks.json"):
        failures += 1

    c.print()
    if failures:
        c.print(f"[red]{failures} problem(s) found.[/]")
    else:
        c.print("[green]All checks passed.[/]")
    return failures
