"""
Quest CLI - command-line interface for the quest orchestrator.

Provides subcommands for:
- quest run        - Run a shell command the way quest terminals do
- quest ask        - Send a message to the assistant
- quest service    - Run a background service in the foreground
- quest cron       - Manage scheduled tasks
- quest config     - View and edit configuration
- quest doctor     - Check dependencies and configuration
"""

__version__ = "0.3.0"
__release_date__ = "2026.10.19"
