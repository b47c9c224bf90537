"""Tests for quest_cli/config.py."""

import logging

import yaml

from quest_cli.config import (
    DEFAULT_CONFIG,
    ensure_quest_home,
    get_config_path,
    get_env_value,
    get_missing_config_fields,
    load_config,
    load_env_file,
    set_config_value,
    setup_logging,
)


class TestLoadConfig:
    def test_defaults_without_file(self, quest_home):
        config = load_config()
        assert config["assistant"]["command"] == "claude"
        assert config["shell"]["terminate_grace_seconds"] == 2.0
        assert config["services"]["max_output_lines"] == 200

    def test_user_values_merge_over_defaults(self, quest_home):
        ensure_quest_home()
        get_config_path().write_text(yaml.dump({"assistant": {"command": "/opt/claude"}}))
        config = load_config()
        assert config["assistant"]["command"] == "/opt/claude"
        assert config["assistant"]["allowed_tools"] == DEFAULT_CONFIG["assistant"]["allowed_tools"]

    def test_broken_yaml_falls_back_to_defaults(self, quest_home):
        ensure_quest_home()
        get_config_path().write_text("assistant: [unclosed")
        assert load_config()["assistant"]["command"] == "claude"

    def test_non_mapping_falls_back_to_defaults(self, quest_home):
        ensure_quest_home()
        get_config_path().write_text("- just\n- a list\n")
        assert load_config()["scheduler"]["output_char_limit"] == 2000

    def test_defaults_are_not_mutated(self, quest_home):
        load_config()["assistant"]["allowed_tools"].append("Nope(*)")
        assert "Nope(*)" not in DEFAULT_CONFIG["assistant"]["allowed_tools"]


class TestSetConfigValue:
    def test_coercion_and_persistence(self, quest_home):
        path, value = set_config_value("shell.terminate_grace_seconds", "0.5")
        assert value == 0.5
        set_config_value("services.max_output_lines", "500")
        set_config_value("assistant.command", "claude-beta")

        written = yaml.safe_load(path.read_text())
        assert written == {
            "shell": {"terminate_grace_seconds": 0.5},
            "services": {"max_output_lines": 500},
            "assistant": {"command": "claude-beta"},
        }
        assert load_config()["services"]["max_output_lines"] == 500

    def test_booleans(self, quest_home):
        assert set_config_value("x.flag", "yes")[1] is True
        assert set_config_value("x.flag", "off")[1] is False

    def test_missing_fields(self, quest_home):
        set_config_value("assistant.command", "claude")
        missing = get_missing_config_fields()
        assert "assistant.allowed_tools" in missing
        assert "assistant.command" not in missing
        assert "shell" in missing


class TestEnv:
    def test_env_file_loaded(self, quest_home, monkeypatch):
        monkeypatch.delenv("QUEST_TEST_TOKEN", raising=False)
        ensure_quest_home()
        (quest_home / ".env").write_text("QUEST_TEST_TOKEN=from-file\n")

        assert get_env_value("QUEST_TEST_TOKEN") == "from-file"
        monkeypatch.setenv("QUEST_TEST_TOKEN", "from-env")
        assert get_env_value("QUEST_TEST_TOKEN") == "from-env"

        monkeypatch.delenv("QUEST_TEST_TOKEN")
        load_env_file()
        assert get_env_value("QUEST_TEST_TOKEN") == "from-file"
        monkeypatch.delenv("QUEST_TEST_TOKEN")

    def test_missing_env_file(self, quest_home):
        load_env_file()
        assert get_env_value("QUEST_SURELY_UNSET_VARIABLE") is None


class TestSetupLogging:
    def test_file_log_is_redacted(self, quest_home):
        log_path = setup_logging()
        logging.getLogger("quest.test").info("token ghp_abcdefghijklmnopqrstuvwxyz")
        for handler in logging.getLogger().handlers:
            handler.flush()
        content = log_path.read_text()
        assert "quest.test" in content
        assert "ghp_abcdefghijklmnopqrstuvwxyz" not in content

    def test_repeat_calls_replace_handlers(self, quest_home):
        setup_logging()
        setup_logging(verbose=True)
        ours = [h for h in logging.getLogger().handlers if getattr(h, "_quest_handler", False)]
        assert len(ours) == 2
        assert logging.getLogger().level == logging.DEBUG
