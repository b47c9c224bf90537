"""Shared fixtures for CLI tests: an isolated QUEST_HOME and clean logging."""

import logging

import pytest


@pytest.fixture
def quest_home(tmp_path, monkeypatch):
    home = tmp_path / "quest-home"
    monkeypatch.setenv("QUEST_HOME", str(home))
    return home


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if getattr(handler, "_quest_handler", False):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
