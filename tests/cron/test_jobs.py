"""Tests for cron/jobs.py -- interval parsing, task records and the JSON store."""

import json

import pytest

from cron.jobs import (
    STATUS_ERROR,
    STATUS_SUCCESS,
    TASK_PROMPT,
    ScheduledTask,
    TaskStore,
    create_task,
    format_interval,
    get_tasks_file,
    parse_interval,
)


@pytest.fixture
def store(tmp_path):
    return TaskStore(tmp_path / "cron" / "tasks.json")


# =========================================================================
# parse_interval / format_interval
# =========================================================================

class TestParseInterval:
    @pytest.mark.parametrize("text,minutes", [
        ("30", 30), ("30m", 30), ("45 minutes", 45), ("2h", 120),
        ("1 hour", 60), ("1d", 1440), ("every 15m", 15), ("  EVERY 2H ", 120),
    ])
    def test_valid(self, text, minutes):
        assert parse_interval(text) == minutes

    @pytest.mark.parametrize("text", ["", "abc", "5s", "-5m", "1.5h", "0", "0m"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_interval(text)


def test_format_interval():
    assert format_interval(30) == "every 30m"
    assert format_interval(120) == "every 2h"
    assert format_interval(2880) == "every 2d"
    assert format_interval(90) == "every 90m"


# =========================================================================
# ScheduledTask
# =========================================================================

class TestScheduledTask:
    def test_defaults(self):
        task = create_task("Disk", "df -h", 30)
        assert len(task.id) == 12
        assert task.type == "cli"
        assert task.enabled
        assert task.last_run is None
        assert task.interval_seconds == 1800

    def test_name_defaults_to_command(self):
        assert create_task("", "uptime", 5).name == "uptime"

    @pytest.mark.parametrize("interval", [0, -1, 1.5, "30", True])
    def test_invalid_interval_rejected(self, interval):
        with pytest.raises(ValueError):
            ScheduledTask(id="t", name="t", command="true", interval_minutes=interval)

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            ScheduledTask(id="t", name="t", command="true", type="webhook")

    def test_record_run_keeps_output_tail(self):
        task = create_task("t", "true", 1)
        task.record_run("a" * 10 + "b" * 5, success=False, limit=5)
        assert task.last_output == "bbbbb"
        assert task.last_status == STATUS_ERROR
        assert task.has_new_output
        assert task.last_run is not None
        task.mark_seen()
        assert not task.has_new_output

    def test_from_dict_ignores_unknown_keys(self):
        task = ScheduledTask.from_dict({
            "id": "abc", "name": "n", "command": "ls", "interval_minutes": 5,
            "schedule": {"kind": "cron"}, "conversation_ids": None,
        })
        assert task.id == "abc"
        assert task.conversation_ids == []


# =========================================================================
# TaskStore
# =========================================================================

class TestTaskStore:
    def test_empty_store(self, store):
        assert store.list() == []
        assert store.get("nope") is None

    def test_add_and_reload(self, store, tmp_path):
        task = store.add(create_task("Backup", "tar czf b.tgz .", 60, working_directory="/srv"))
        fresh = TaskStore(tmp_path / "cron" / "tasks.json")
        loaded = fresh.get(task.id)
        assert loaded == task

    def test_duplicate_id_rejected(self, store):
        task = store.add(create_task("a", "true", 1))
        with pytest.raises(ValueError):
            store.add(task)

    def test_list_filters_disabled(self, store):
        store.add(create_task("on", "true", 1))
        store.add(create_task("off", "true", 1, enabled=False))
        assert [t.name for t in store.list(include_disabled=False)] == ["on"]
        assert len(store.list()) == 2

    def test_update(self, store):
        task = store.add(create_task("a", "true", 1))
        updated = store.update(task.id, interval_minutes=15, name="renamed")
        assert updated.interval_minutes == 15
        assert store.get(task.id).name == "renamed"

    def test_update_validates(self, store):
        task = store.add(create_task("a", "true", 1))
        with pytest.raises(ValueError):
            store.update(task.id, interval_minutes=0)
        with pytest.raises(ValueError):
            store.update(task.id, id="other")
        with pytest.raises(ValueError):
            store.update(task.id, colour="blue")
        assert store.get(task.id).interval_minutes == 1

    def test_update_unknown_task(self, store):
        assert store.update("missing", enabled=False) is None

    def test_remove(self, store):
        task = store.add(create_task("a", "true", 1))
        assert store.remove(task.id) is True
        assert store.remove(task.id) is False
        assert store.list() == []

    def test_record_run_and_mark_seen(self, store):
        task = store.add(create_task("a", "true", 1))
        recorded = store.record_run(task.id, "x" * 3000, success=True)
        assert recorded.last_status == STATUS_SUCCESS
        assert len(store.get(task.id).last_output) == 2000
        assert store.mark_seen(task.id) is True
        assert store.get(task.id).has_new_output is False

    def test_record_run_does_not_resurrect_deleted_task(self, store):
        task = store.add(create_task("a", "true", 1))
        store.remove(task.id)
        assert store.record_run(task.id, "late", success=True) is None
        assert store.list() == []

    def test_save_leaves_no_temp_files(self, store):
        store.add(create_task("a", "true", 1))
        assert sorted(p.name for p in store.path.parent.iterdir()) == ["tasks.json", "tasks.json.lock"]

    def test_invalid_records_are_skipped(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({"tasks": [
            {"id": "good", "name": "g", "command": "true", "interval_minutes": 5, "type": TASK_PROMPT},
            {"id": "bad", "name": "b", "command": "true", "interval_minutes": 0},
            {"name": "no id"},
        ]}))
        assert [t.id for t in store.list()] == ["good"]

    def test_corrupt_file_reads_as_empty(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json")
        assert store.list() == []

    def test_mutation_waits_for_lock_held_elsewhere(self, tmp_path):
        fcntl = pytest.importorskip("fcntl")
        store = TaskStore(tmp_path / "tasks.json", lock_timeout=0.2)
        task = store.add(create_task("a", "true", 1))

        # A second open of the lock file stands in for another process.
        with open(store.lock_path, "a+") as holder:
            fcntl.flock(holder.fileno(), fcntl.LOCK_EX)
            with pytest.raises(TimeoutError):
                store.update(task.id, enabled=False)
            with pytest.raises(TimeoutError):
                store.record_run(task.id, "out", success=True)
            fcntl.flock(holder.fileno(), fcntl.LOCK_UN)

        assert store.get(task.id).enabled is True
        store.update(task.id, enabled=False)
        assert store.get(task.id).enabled is False

    def test_daemon_record_keeps_cli_disable(self, tmp_path):
        cli = TaskStore(tmp_path / "tasks.json")
        daemon = TaskStore(tmp_path / "tasks.json")
        task = daemon.add(create_task("a", "true", 1))
        cli.update(task.id, enabled=False)
        recorded = daemon.record_run(task.id, "out", success=True)
        assert recorded.enabled is False
        assert cli.get(task.id).last_output == "out"


def test_tasks_file_follows_quest_home(tmp_path, monkeypatch):
    monkeypatch.setenv("QUEST_HOME", str(tmp_path))
    assert get_tasks_file() == tmp_path / "cron" / "tasks.json"
