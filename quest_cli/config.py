"""
Configuration management for the quest orchestrator.

Config files are stored in ~/.quest/ for easy access:
- ~/.quest/config.yaml  - All settings (assistant CLI, timeouts, limits)
- ~/.quest/.env         - API keys and secrets
- ~/.quest/quests.json  - Quest snapshot
- ~/.quest/cron/        - Scheduled task store
- ~/.quest/logs/        - Rotating log files

Set QUEST_HOME to relocate all of it.
"""

import copy
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import dotenv_values, load_dotenv

from agent.redact import RedactingFormatter

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# =============================================================================
# Paths
# =============================================================================

def get_quest_home() -> Path:
    """Get the quest home directory (~/.quest)."""
    return Path(os.getenv("QUEST_HOME", Path.home() / ".quest"))


def get_config_path() -> Path:
    return get_quest_home() / "config.yaml"


def get_env_path() -> Path:
    return get_quest_home() / ".env"


def get_log_path() -> Path:
    return get_quest_home() / "logs" / "quest.log"


def ensure_quest_home() -> Path:
    """Ensure ~/.quest and its subdirectories exist."""
    home = get_quest_home()
    home.mkdir(parents=True, exist_ok=True)
    (home / "cron").mkdir(exist_ok=True)
    (home / "logs").mkdir(exist_ok=True)
    return home


# =============================================================================
# Config loading/saving
# =============================================================================

DEFAULT_CONFIG = {
    "assistant": {
        "command": "claude",
        "permission_mode": "bypassPermissions",
        "allowed_tools": ["Bash(*)", "Read(*)", "Write(*)", "Edit(*)", "WebFetch(*)"],
        "extra_args": [],
    },

    "shell": {
        # Seconds between SIGTERM and SIGKILL when cancelling a process group
        "terminate_grace_seconds": 2.0,
    },

    "services": {
        "max_output_lines": 200,
    },

    "scheduler": {
        "output_char_limit": 2000,
        # A run is skipped if the previous start was less than
        # interval * reentry_ratio ago
        "reentry_ratio": 0.9,
    },

    "logging": {
        "level": "INFO",
        "max_bytes": 5 * 1024 * 1024,
        "backup_count": 3,
    },

    "_config_version": 1,
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base*, preserving nested defaults.

    Keys in *override* take precedence. If both values are dicts the merge
    recurses, so overriding only ``assistant.command`` keeps the default
    ``assistant.allowed_tools`` intact.
    """
    result = base.copy()
    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_user_config() -> Dict[str, Any]:
    config_path = get_config_path()
    if not config_path.exists():
        return {}
    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{config_path} must contain a mapping")
    return data


def load_config() -> Dict[str, Any]:
    """Load configuration from ~/.quest/config.yaml merged over the defaults."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    try:
        config = _deep_merge(config, _read_user_config())
    except (yaml.YAMLError, ValueError, OSError) as e:
        logger.warning("Failed to load config, using defaults: %s", e)
    return config


def save_config(config: Dict[str, Any]) -> Path:
    """Save configuration to ~/.quest/config.yaml."""
    ensure_quest_home()
    config_path = get_config_path()
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)
    return config_path


def _coerce_value(value: str) -> Any:
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    if value.isdigit():
        return int(value)
    if value.replace(".", "", 1).isdigit():
        return float(value)
    return value


def set_config_value(key: str, value: str) -> Tuple[Path, Any]:
    """
    Set ``key`` (dotted, e.g. "shell.terminate_grace_seconds") in config.yaml.

    Only the user's own settings are written back, not the merged defaults.
    Returns the config path and the coerced value.
    """
    try:
        user_config = _read_user_config()
    except (yaml.YAMLError, ValueError):
        user_config = {}

    parts = key.split(".")
    current = user_config
    for part in parts[:-1]:
        if part not in current or not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    coerced = _coerce_value(value)
    current[parts[-1]] = coerced

    return save_config(user_config), coerced


def get_missing_config_fields() -> List[str]:
    """Dotted keys present in DEFAULT_CONFIG but missing from config.yaml."""
    try:
        user_config = _read_user_config()
    except (yaml.YAMLError, ValueError, OSError):
        return []
    missing: List[str] = []

    def _check(defaults: dict, current: dict, prefix: str = ""):
        for key, value in defaults.items():
            if key.startswith("_"):
                continue
            path = f"{prefix}{key}"
            if key not in current:
                missing.append(path)
            elif isinstance(value, dict) and isinstance(current.get(key), dict):
                _check(value, current[key], f"{path}.")

    _check(DEFAULT_CONFIG, user_config)
    return missing


# =============================================================================
# Environment
# =============================================================================

def load_env_file(override: bool = False) -> None:
    """Load ~/.quest/.env into os.environ (UTF-8, falling back to latin-1)."""
    env_path = get_env_path()
    if not env_path.exists():
        return
    try:
        load_dotenv(env_path, override=override, encoding="utf-8")
    except UnicodeDecodeError:
        load_dotenv(env_path, override=override, encoding="latin-1")


def get_env_value(key: str) -> Optional[str]:
    """Get a value from the environment, then from ~/.quest/.env."""
    if key in os.environ:
        return os.environ[key]
    env_path = get_env_path()
    if not env_path.exists():
        return None
    try:
        values = dotenv_values(env_path, encoding="utf-8")
    except UnicodeDecodeError:
        values = dotenv_values(env_path, encoding="latin-1")
    return values.get(key)


# =============================================================================
# Logging
# =============================================================================

def setup_logging(verbose: bool = False, config: Optional[Dict[str, Any]] = None) -> Path:
    """
    Route all loggers to ~/.quest/logs/quest.log (rotating, secrets redacted).

    With ``verbose`` a DEBUG stderr handler is added as well. Calling this
    more than once replaces the handlers it installed before.
    """
    config = config or load_config()
    log_cfg = config.get("logging", {})
    ensure_quest_home()
    log_path = get_log_path()

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_quest_handler", False):
            root.removeHandler(handler)
            handler.close()

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=int(log_cfg.get("max_bytes", 5 * 1024 * 1024)),
        backupCount=int(log_cfg.get("backup_count", 3)),
        encoding="utf-8",
    )
    file_handler.setFormatter(RedactingFormatter(_LOG_FORMAT))
    file_handler._quest_handler = True
    root.addHandler(file_handler)

    level = logging.getLevelName(str(log_cfg.get("level", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO

    if verbose:
        console = logging.StreamHandler()
        console.setFormatter(RedactingFormatter("%(levelname)s %(name)s: %(message)s"))
        console.setLevel(logging.DEBUG)
        console._quest_handler = True
        root.addHandler(console)
        level = logging.DEBUG

    root.setLevel(level)
    return log_path
