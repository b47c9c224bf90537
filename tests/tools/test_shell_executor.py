"""Tests for tools.shell_executor -- real /bin/sh subprocesses."""

import asyncio
import os
import time

import pytest

from tools.errors import AlreadyRegistered, SpawnError
from tools.events import EventBus, shell_key
from tools.process_registry import ProcessRegistry
from tools.shell_executor import (
    KILLED_EXIT_CODE,
    SIGNALLED_EXIT_CODE,
    kill_shell_process,
    resolve_working_directory,
    run_shell_command,
)


@pytest.fixture
def registry():
    return ProcessRegistry()


async def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class TestResolveWorkingDirectory:
    def test_tilde_forms(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        assert resolve_working_directory("~") == str(tmp_path)
        assert resolve_working_directory(None) == str(tmp_path)
        assert resolve_working_directory("~/proj") == str(tmp_path / "proj")

    def test_absolute_path_unchanged(self):
        assert resolve_working_directory("/var/tmp") == "/var/tmp"


class TestRunShellCommand:
    @pytest.mark.asyncio
    async def test_echo(self, registry):
        result = await run_shell_command("t1", "echo hi", registry=registry)
        assert result.stdout == "hi\n"
        assert result.stderr == ""
        assert result.exit_code == 0
        assert result.ok
        assert registry.get("t1") is None

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_a_result(self, registry):
        result = await run_shell_command("t1", "echo oops >&2; exit 7", registry=registry)
        assert result.exit_code == 7
        assert result.stderr == "oops\n"
        assert not result.cancelled

    @pytest.mark.asyncio
    async def test_pipelines_and_operators(self, registry):
        result = await run_shell_command("t1", "printf 'a\\nb\\n' | wc -l && echo done", registry=registry)
        assert result.stdout.split() == ["2", "done"]

    @pytest.mark.asyncio
    async def test_runs_in_working_directory(self, registry, tmp_path):
        result = await run_shell_command("t1", "pwd", str(tmp_path), registry=registry)
        assert os.path.realpath(result.stdout.strip()) == os.path.realpath(tmp_path)

    @pytest.mark.asyncio
    async def test_ansi_output_is_returned_raw(self, registry):
        result = await run_shell_command("t1", "printf '\\033[31mred\\033[0m'", registry=registry)
        assert result.stdout == "\x1b[31mred\x1b[0m"

    @pytest.mark.asyncio
    async def test_missing_directory_raises_spawn_error(self, registry, tmp_path):
        with pytest.raises(SpawnError):
            await run_shell_command("t1", "echo hi", str(tmp_path / "missing"), registry=registry)
        assert registry.get("t1") is None

    @pytest.mark.asyncio
    async def test_unrequested_signal_death(self, registry):
        result = await run_shell_command("t1", "kill -9 $$", registry=registry)
        assert result.exit_code == SIGNALLED_EXIT_CODE


class TestCancellation:
    @pytest.mark.asyncio
    async def test_kill_returns_partial_output(self, registry):
        bus = EventBus()
        with bus.subscribe(shell_key("long")) as sub:
            started = time.monotonic()
            task = asyncio.ensure_future(
                run_shell_command("long", "echo started; sleep 30", registry=registry, bus=bus)
            )
            first = await sub.get(timeout=5)
            assert first.text == "started\n"

            assert kill_shell_process("long", registry=registry) is True
            result = await asyncio.wait_for(task, 10)

        assert result.exit_code == KILLED_EXIT_CODE
        assert result.cancelled
        assert "started" in result.stdout
        assert time.monotonic() - started < 10
        assert registry.get("long") is None

    @pytest.mark.asyncio
    async def test_escalates_to_sigkill_when_term_is_ignored(self, registry):
        bus = EventBus()
        with bus.subscribe(shell_key("stubborn")) as sub:
            task = asyncio.ensure_future(run_shell_command(
                "stubborn", "trap '' TERM; echo ready; sleep 30",
                registry=registry, bus=bus, grace_seconds=0.2,
            ))
            await sub.get(timeout=5)
            registry.signal("stubborn")
            result = await asyncio.wait_for(task, 10)
        assert result.exit_code == KILLED_EXIT_CODE

    @pytest.mark.asyncio
    async def test_kill_reaches_background_child_after_shell_exit(self, registry):
        started = time.monotonic()
        task = asyncio.ensure_future(run_shell_command("bg", "echo hi; sleep 5 &", registry=registry))
        await _wait_until(lambda: registry.get("bg") is not None)
        proc = registry.get("bg").process
        await _wait_until(lambda: proc.returncode is not None)

        # The shell is gone but sleep still holds stdout open.
        assert not task.done()
        assert registry.is_running("bg")
        assert kill_shell_process("bg", registry=registry) is True

        result = await asyncio.wait_for(task, 10)
        assert result.exit_code == KILLED_EXIT_CODE
        assert result.stdout == "hi\n"
        assert time.monotonic() - started < 4
        assert registry.get("bg") is None

    @pytest.mark.asyncio
    async def test_kill_unknown_token(self, registry):
        assert kill_shell_process("never-started", registry=registry) is False

    @pytest.mark.asyncio
    async def test_cancelling_the_caller_terminates_the_process(self, registry):
        task = asyncio.ensure_future(run_shell_command("t1", "sleep 30", registry=registry))
        await _wait_until(lambda: registry.is_running("t1"))
        proc = registry.get("t1").process

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await _wait_until(lambda: proc.returncode is not None)
        assert registry.get("t1") is None

    @pytest.mark.asyncio
    async def test_live_token_is_rejected(self, registry):
        first = asyncio.ensure_future(run_shell_command("dup", "sleep 30", registry=registry))
        await _wait_until(lambda: registry.is_running("dup"))
        with pytest.raises(AlreadyRegistered):
            await run_shell_command("dup", "echo hi", registry=registry)
        registry.signal("dup")
        result = await asyncio.wait_for(first, 10)
        assert result.exit_code == KILLED_EXIT_CODE


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_commands_keep_output_separate(self, registry):
        results = await asyncio.gather(*[
            run_shell_command(f"c{i}", f"echo out-{i}; echo err-{i} >&2; exit {i}", registry=registry)
            for i in range(8)
        ])
        for i, result in enumerate(results):
            assert result.stdout == f"out-{i}\n"
            assert result.stderr == f"err-{i}\n"
            assert result.exit_code == i
        assert registry.list_running() == []

    @pytest.mark.asyncio
    async def test_events_are_published_per_token(self, registry):
        bus = EventBus()
        with bus.subscribe(shell_key("a")) as sub_a, bus.subscribe(shell_key("b")) as sub_b:
            await asyncio.gather(
                run_shell_command("a", "echo alpha", registry=registry, bus=bus),
                run_shell_command("b", "echo beta", registry=registry, bus=bus),
            )
            events_a = sub_a.pending()
            events_b = sub_b.pending()

        assert "".join(e.text for e in events_a if e.text) == "alpha\n"
        assert "".join(e.text for e in events_b if e.text) == "beta\n"
        assert events_a[-1].is_complete and events_a[-1].exit_code == 0
        assert sum(1 for e in events_b if e.is_complete) == 1
