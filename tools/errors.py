"""Exception types shared by the process-producing components.

Spawn failures, token collisions and assistant failures each get their own
class so callers can tell "nothing ran" apart from "it ran and failed".
A cancelled shell command is not an exception: it comes back as a normal
result carrying the kill sentinel exit code.
"""


class QuestError(Exception):
    """Base class for orchestration errors."""


class SpawnError(QuestError):
    """The process could not be started (bad directory, missing executable).

    No process was registered and no output was captured.
    """


class AlreadyRegistered(QuestError):
    """The token is still bound to a running process."""

    def __init__(self, token: str):
        super().__init__(f"Process token already in use: {token}")
        self.token = token


class AlreadyRunning(AlreadyRegistered):
    """A background service with this id is already running."""

    def __init__(self, service_id: str):
        QuestError.__init__(self, f"Service is already running: {service_id}")
        self.token = service_id


class AssistantError(QuestError):
    """The assistant CLI ran but reported an error or exited non-zero."""


class AssistantCancelled(AssistantError):
    """The assistant exchange was cancelled through the process registry."""
