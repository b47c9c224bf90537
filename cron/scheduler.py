"""
Scheduled task runner - fires shell commands and assistant prompts on intervals.

One asyncio timer per enabled task: the task runs as soon as its timer is
armed, then every ``interval_minutes``. Any change to the task set re-arms
all timers (reconcile). The time of each task's last start survives a
reconcile, so a re-armed timer does not immediately run the task again.

A run is skipped when the same task is still running, or when its previous
start was less than ``interval * reentry_ratio`` ago. The ratio guard is a
debounce against timer jitter and re-arming, not a lock.

Runs never raise: the outcome (or ``Error: <exc>``) is recorded on the task
in the store.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from agent.claude_session import AssistantRequest, get_session_manager
from cron.jobs import OUTPUT_CHAR_LIMIT, TASK_PROMPT, ScheduledTask, TaskStore
from tools.shell_executor import run_shell_command

logger = logging.getLogger(__name__)

STATE_DISABLED = "disabled"
STATE_ARMED = "armed"
STATE_RUNNING = "running"

REENTRY_RATIO = 0.9


class Scheduler:
    """
    Args:
        store: Task store; re-read on every tick so edits are picked up.
        shell_runner: ``async (token, command, working_directory) -> ShellResult``.
        assistant: Object with ``async send(AssistantRequest)``; the shared
            session manager by default.
        quests: Quest store used to resolve context conversations and append
            prompt results to the primary conversation. Optional.
        clock: Monotonic seconds, used for the re-entry guard.
        sleep: Awaitable sleep between runs.
    """

    def __init__(
        self,
        store: TaskStore,
        shell_runner: Callable[..., Awaitable[Any]] = run_shell_command,
        assistant: Any = None,
        quests: Any = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        output_char_limit: int = OUTPUT_CHAR_LIMIT,
        reentry_ratio: float = REENTRY_RATIO,
    ):
        self.store = store
        self.shell_runner = shell_runner
        self.assistant = assistant
        self.quests = quests
        self.clock = clock
        self.sleep = sleep
        self.output_char_limit = output_char_limit
        self.reentry_ratio = reentry_ratio

        self._timers: Dict[str, asyncio.Task] = {}
        self._last_start: Dict[str, float] = {}
        self._running: Set[str] = set()
        self._inflight: Set[asyncio.Task] = set()
        self._started = False

    @classmethod
    def from_config(cls, store: TaskStore, config: Dict[str, Any], **kwargs) -> "Scheduler":
        sched_cfg = config.get("scheduler", {})
        return cls(
            store,
            output_char_limit=sched_cfg.get("output_char_limit", OUTPUT_CHAR_LIMIT),
            reentry_ratio=sched_cfg.get("reentry_ratio", REENTRY_RATIO),
            **kwargs,
        )

    # ----- Timers -----

    def reconcile(self, tasks: Optional[List[ScheduledTask]] = None) -> int:
        """Cancel every timer and arm one per enabled task. Returns the count armed."""
        self._cancel_timers()
        if tasks is None:
            tasks = self.store.list()
        for task in tasks:
            if task.enabled:
                self._timers[task.id] = asyncio.create_task(
                    self._timer_loop(task.id), name=f"cron-{task.id}"
                )
        logger.debug("Armed %d scheduled task timer(s)", len(self._timers))
        return len(self._timers)

    def _cancel_timers(self) -> List[asyncio.Task]:
        timers = list(self._timers.values())
        for timer in timers:
            timer.cancel()
        self._timers.clear()
        return timers

    async def _timer_loop(self, task_id: str):
        while True:
            task = self.store.get(task_id)
            if task is None or not task.enabled:
                return
            # Runs are detached from the timer: cancelling the timer (disable,
            # delete, reconcile) leaves an in-flight run alone.
            run = asyncio.create_task(self.run_task(task), name=f"cron-run-{task_id}")
            self._inflight.add(run)
            run.add_done_callback(self._inflight.discard)
            await self.sleep(task.interval_seconds)

    def start(self) -> int:
        """Arm timers for all enabled tasks. Must be called from a running loop."""
        self._started = True
        count = self.reconcile()
        logger.info("Scheduler started with %d enabled task(s)", count)
        return count

    async def stop(self, cancel_running: bool = True):
        """Disarm all timers; by default also cancel runs still in flight."""
        self._started = False
        timers = self._cancel_timers()
        if cancel_running:
            for run in list(self._inflight):
                run.cancel()
        pending = timers + list(self._inflight)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Scheduler stopped")

    # ----- Task management -----

    def add(self, task: ScheduledTask) -> ScheduledTask:
        self.store.add(task)
        self._reconcile_if_running()
        return task

    def update(self, task_id: str, **changes) -> Optional[ScheduledTask]:
        task = self.store.update(task_id, **changes)
        if task is not None:
            self._reconcile_if_running()
        return task

    def enable(self, task_id: str) -> Optional[ScheduledTask]:
        return self.update(task_id, enabled=True)

    def disable(self, task_id: str) -> Optional[ScheduledTask]:
        timer = self._timers.pop(task_id, None)
        if timer is not None:
            timer.cancel()
        return self.update(task_id, enabled=False)

    def delete(self, task_id: str) -> bool:
        timer = self._timers.pop(task_id, None)
        if timer is not None:
            timer.cancel()
        removed = self.store.remove(task_id)
        if removed:
            self._last_start.pop(task_id, None)
            self._reconcile_if_running()
        return removed

    def _reconcile_if_running(self):
        # Task edits before start() or after stop() only touch the store.
        if self._started:
            self.reconcile()

    def state(self, task_id: str) -> str:
        if task_id in self._running:
            return STATE_RUNNING
        timer = self._timers.get(task_id)
        if timer is not None and not timer.done():
            return STATE_ARMED
        return STATE_DISABLED

    # ----- Execution -----

    async def run_task(self, task: ScheduledTask, force: bool = False) -> bool:
        """
        Run ``task`` once and record the outcome.

        Returns False if the re-entry guard skipped the run. ``force`` skips
        the interval guard (manual "run now") but never overlaps a live run.
        """
        if task.id in self._running:
            logger.debug("Task '%s' still running, skipping", task.name)
            return False
        now = self.clock()
        last = self._last_start.get(task.id)
        if not force and last is not None and now - last < task.interval_seconds * self.reentry_ratio:
            logger.debug("Task '%s' ran %.0fs ago, skipping", task.name, now - last)
            return False

        self._last_start[task.id] = now
        self._running.add(task.id)
        logger.info("Running scheduled task '%s' (ID: %s, type: %s)", task.name, task.id, task.type)
        try:
            try:
                if task.type == TASK_PROMPT:
                    output, success = await self._run_prompt(task)
                else:
                    output, success = await self._run_shell(task)
            except Exception as e:
                logger.error("Task '%s' failed: %s", task.name, e)
                output, success = f"Error: {e}", False
            self._record(task, output, success)
        finally:
            self._running.discard(task.id)
        return True

    async def _run_shell(self, task: ScheduledTask) -> Tuple[str, bool]:
        token = f"scheduled-{task.id}-{int(time.time() * 1000)}"
        result = await self.shell_runner(token, task.command, task.working_directory or "~")
        output = result.stdout or result.stderr or "(no output)"
        return output, result.exit_code == 0

    async def _run_prompt(self, task: ScheduledTask) -> Tuple[str, bool]:
        primary = None
        contexts = []
        if self.quests is not None and task.conversation_ids:
            primary = self.quests.get(task.conversation_ids[0])
            contexts = [q for q in (self.quests.get(cid) for cid in task.conversation_ids) if q is not None]

        context_info = " ".join(f"[Context: {q.title}]" for q in contexts)
        message = f"{context_info}\n\n{task.command}" if context_info else task.command

        assistant = self.assistant or get_session_manager()
        result = await assistant.send(AssistantRequest(
            conversation_id=f"scheduled-{task.id}",
            message=message,
            working_directory=primary.working_directory if primary else None,
        ))

        if primary is not None:
            self.quests.add_message(primary.id, "user", f"[Scheduled Task: {task.name}]\n{task.command}")
            self.quests.add_message(primary.id, "assistant", result.response)
        return result.response, True

    def _record(self, task: ScheduledTask, output: str, success: bool):
        try:
            recorded = self.store.record_run(task.id, output, success, self.output_char_limit)
        except OSError as e:
            logger.error("Could not record run of task '%s': %s", task.name, e)
            return
        if recorded is None:
            logger.info("Task '%s' was deleted while running; result dropped", task.name)
        else:
            logger.info("Task '%s' finished: %s", task.name, recorded.last_status)
