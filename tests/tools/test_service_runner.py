"""Tests for tools.service_runner -- long-running processes and their events."""

import asyncio
import signal

import pytest

from tools.errors import AlreadyRunning, SpawnError
from tools.events import EventBus, service_key
from tools.process_registry import ProcessRegistry
from tools.service_runner import ServiceRunner


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def runner(bus):
    return ServiceRunner(registry=ProcessRegistry(), bus=bus, grace_seconds=0.5)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_natural_exit_emits_one_completion_event_last(self, runner, bus):
        with bus.subscribe(service_key("job")) as sub:
            await runner.start("job", "echo one; echo two >&2; exit 3")
            exit_code = await runner.wait("job", timeout=10)
            events = sub.pending()

        assert exit_code == 3
        lines = {(e.text, e.is_stderr) for e in events if not e.is_complete}
        assert lines == {("one", False), ("two", True)}
        completions = [e for e in events if e.is_complete]
        assert len(completions) == 1
        assert events[-1] is completions[0]
        assert completions[0].exit_code == 3
        assert runner.list_running() == []

    @pytest.mark.asyncio
    async def test_stop_signals_and_watcher_reports_exit(self, runner, bus):
        with bus.subscribe(service_key("web")) as sub:
            state = await runner.start("web", "sleep 30")
            assert runner.list_running() == ["web"]
            assert state.running

            assert runner.stop("web") is True
            exit_code = await runner.wait("web", timeout=10)
            events = sub.pending()

        assert exit_code == -signal.SIGTERM
        assert [e.is_complete for e in events] == [True]
        assert not state.running
        assert runner.list_running() == []

    @pytest.mark.asyncio
    async def test_stop_reaches_background_child_after_shell_exit(self, runner, bus):
        with bus.subscribe(service_key("svc")) as sub:
            state = await runner.start("svc", "echo up; sleep 5 &")
            proc = state.handle.process
            await asyncio.wait_for(proc.wait(), 5)

            # The shell exited, but sleep keeps the service's output open.
            assert runner.list_running() == ["svc"]
            early = sub.pending()
            assert not any(e.is_complete for e in early)
            assert runner.stop("svc") is True
            await runner.wait("svc", timeout=3)
            events = early + sub.pending()

        assert sum(1 for e in events if e.is_complete) == 1
        assert runner.list_running() == []

        await runner.start("svc", "echo again")
        assert await runner.wait("svc", timeout=5) == 0

    @pytest.mark.asyncio
    async def test_stop_unknown_service(self, runner):
        assert runner.stop("nothing") is False

    @pytest.mark.asyncio
    async def test_start_while_running_raises(self, runner):
        await runner.start("web", "sleep 30")
        with pytest.raises(AlreadyRunning):
            await runner.start("web", "sleep 30")
        await runner.stop_all()

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, runner, bus):
        await runner.start("web", "sleep 30")
        runner.stop("web")
        await runner.wait("web", timeout=10)

        with bus.subscribe(service_key("web")) as sub:
            await runner.start("web", "echo again")
            assert await runner.wait("web", timeout=10) == 0
            events = sub.pending()

        assert [e.text for e in events if not e.is_complete] == ["again"]
        assert sum(1 for e in events if e.is_complete) == 1

    @pytest.mark.asyncio
    async def test_missing_directory_raises_spawn_error(self, runner, tmp_path):
        with pytest.raises(SpawnError):
            await runner.start("web", "echo hi", str(tmp_path / "nope"))
        assert runner.list_running() == []

    @pytest.mark.asyncio
    async def test_stop_all(self, runner):
        await runner.start("a", "sleep 30")
        await runner.start("b", "sleep 30")
        assert sorted(runner.list_running()) == ["a", "b"]
        await runner.stop_all()
        assert runner.list_running() == []
        assert runner.get_state("a").exit_code is not None


class TestOutputBuffer:
    @pytest.mark.asyncio
    async def test_ring_buffer_keeps_last_200_lines(self, runner):
        await runner.start("counter", "seq 1 250")
        await runner.wait("counter", timeout=10)
        output = runner.get_output("counter")
        assert len(output) == 200
        assert output[0] == "51"
        assert output[-1] == "250"

    @pytest.mark.asyncio
    async def test_custom_buffer_size(self, bus):
        runner = ServiceRunner(registry=ProcessRegistry(), bus=bus, max_output_lines=5)
        await runner.start("counter", "seq 1 20")
        await runner.wait("counter", timeout=10)
        assert runner.get_output("counter") == ["16", "17", "18", "19", "20"]

    @pytest.mark.asyncio
    async def test_concurrent_services_keep_output_separate(self, runner, bus):
        with bus.subscribe(service_key("x")) as sub_x, bus.subscribe(service_key("y")) as sub_y:
            await runner.start("x", "echo from-x")
            await runner.start("y", "echo from-y")
            await asyncio.gather(runner.wait("x", timeout=10), runner.wait("y", timeout=10))
            x_lines = [e.text for e in sub_x.pending() if not e.is_complete]
            y_lines = [e.text for e in sub_y.pending() if not e.is_complete]
        assert x_lines == ["from-x"]
        assert y_lines == ["from-y"]

    @pytest.mark.asyncio
    async def test_unknown_service_output_is_empty(self, runner):
        assert runner.get_output("never") == []
        assert await runner.wait("never") is None

    @pytest.mark.asyncio
    async def test_forget_drops_finished_run_only(self, runner):
        await runner.start("done", "echo bye")
        await runner.wait("done", timeout=10)
        await runner.start("live", "sleep 30")
        assert sorted(runner.known_ids()) == ["done", "live"]

        assert runner.forget("live") is False
        assert runner.forget("done") is True
        assert runner.get_state("done") is None
        assert runner.get_output("done") == []
        assert runner.forget("done") is False
        assert runner.known_ids() == ["live"]
        await runner.stop_all()


class TestModuleApi:
    @pytest.mark.asyncio
    async def test_start_stop_through_shared_runner(self, monkeypatch):
        import tools.service_runner as service_runner

        monkeypatch.setattr(service_runner, "_default_runner",
                            ServiceRunner(registry=ProcessRegistry(), bus=EventBus(), grace_seconds=0.5))
        await service_runner.start_service("shared", "sleep 30")
        assert service_runner.get_running_services() == ["shared"]
        assert service_runner.stop_service("shared") is True
        await service_runner.get_service_runner().wait("shared", timeout=10)
        assert service_runner.get_running_services() == []
        assert service_runner.stop_service("shared") is False
