"""
Tools Package

Process-level building blocks shared by the CLI, the quest runtime and the
scheduler:

- shell_executor: one-shot /bin/sh commands with cancellation
- service_runner: long-running background services with output buffers
- process_registry: token -> live process bookkeeping and group signalling
- events: per-key event bus for streamed output
- file_tools: home directory and directory listing helpers
"""
