"""CLI presentation -- spinner, ANSI stripping, stream folding, small formatters.

Pure display helpers with no process or store dependency. Used by
quest_cli.main to render command output, service logs and assistant turns.
"""

import re
import sys
import threading
import time
from typing import Optional

from agent.claude_session import CompletedEvent, ContentEvent, ErrorEvent, ThinkingEvent

# CSI sequences and two-byte escapes (colors, cursor movement, erase line).
_ANSI_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences from captured output."""
    if not text:
        return text
    return _ANSI_RE.sub("", text)


def format_tokens(count: Optional[int]) -> str:
    """1234 -> '1.2k', 2500000 -> '2.5M'."""
    if not count:
        return "0"
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}k"
    return str(count)


def service_exit_line(exit_code: Optional[int]) -> str:
    return f"[Process exited with code {'unknown' if exit_code is None else exit_code}]"


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


# =========================================================================
# Assistant stream folding
# =========================================================================

class StreamingReply:
    """
    Folds assistant events into what a UI shows while a turn is running.

    Content fragments concatenate; a thinking status replaces the previous
    one and is cleared as soon as content arrives.
    """

    def __init__(self):
        self.content = ""
        self.thinking: Optional[str] = None
        self.error: Optional[str] = None
        self.done = False
        self.session_id: Optional[str] = None
        self.tokens_used: Optional[int] = None

    def apply(self, event) -> None:
        if isinstance(event, ThinkingEvent):
            self.thinking = event.text
        elif isinstance(event, ContentEvent):
            self.content += event.text
            self.thinking = None
        elif isinstance(event, CompletedEvent):
            self.done = True
            self.thinking = None
            self.session_id = event.session_id
            self.tokens_used = event.tokens_used
        elif isinstance(event, ErrorEvent):
            self.done = True
            self.thinking = None
            self.error = event.message


# =========================================================================
# Spinner
# =========================================================================

class Spinner:
    """Single-line spinner written to stdout from a daemon thread."""

    FRAMES = ['⠋', '⠙', '⠹', '⠸', '⠼', '⠴', '⠦', '⠧', '⠇', '⠏']

    def __init__(self, message: str = ""):
        self.message = message
        self.running = False
        self.thread = None
        self.frame_idx = 0
        self.start_time = None
        self.last_line_len = 0
        self._out = sys.stdout

    def _write(self, text: str, end: str = '\n', flush: bool = False):
        try:
            self._out.write(text + end)
            if flush:
                self._out.flush()
        except (ValueError, OSError):
            pass

    def _animate(self):
        while self.running:
            frame = self.FRAMES[self.frame_idx % len(self.FRAMES)]
            elapsed = time.time() - self.start_time
            line = f"  {frame} {self.message} ({elapsed:.1f}s)"
            pad = max(self.last_line_len - len(line), 0)
            self._write(f"\r{line}{' ' * pad}", end='', flush=True)
            self.last_line_len = len(line)
            self.frame_idx += 1
            time.sleep(0.12)

    def start(self):
        if self.running:
            return
        self.running = True
        self.start_time = time.time()
        self.thread = threading.Thread(target=self._animate, daemon=True)
        self.thread.start()

    def update_text(self, new_message: str):
        self.message = new_message

    def stop(self, final_message: str = None):
        self.running = False
        if self.thread:
            self.thread.join(timeout=0.5)
        blanks = ' ' * max(self.last_line_len + 5, 40)
        self._write(f"\r{blanks}\r", end='', flush=True)
        if final_message:
            self._write(f"  {final_message}", flush=True)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False
