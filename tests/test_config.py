# playsync test scripts
from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path

import pytest

from playsync.config import ENV_SPEC, TASK_DEFAULTS, Config, load_config, load_tasks, next_run, validate_cron
from playsync.errors import ConfigValidationError
from playsync.main import HANDLED_TASKS, parse_task_args
from playsync.watched import WatchedPolicy


def test_defaults(tmp_path: Path) -> None:
    config = load_config({}, str(tmp_path))

    assert config.dry_run is False
    assert config.library_segment == 1_000
    assert config.export_threshold == 1_000
    assert config.export_not_found == 259_200
    assert config.max_threads == 10
    assert config.episodes_disable_guid is True
    assert config.watched_policy == WatchedPolicy.PLAYED_SINCE_RESET
    assert config.state_file == os.path.join(str(tmp_path), "watched_state.json")
    assert config.tasks["backup"].enabled is True
    assert config.tasks["sync"].enabled is False


def test_values_from_env(tmp_path: Path) -> None:
    env = {
        "DRYRUN": "yes",
        "EXPORT_THRESHOLD": "5",
        "WATCHED_POLICY": "WATCHED_WINS",
        "WATCHED_STATE_FILE": "/data/state.json",
        "BACKUP_DIR": "snapshots",
        "DEBUG_LEVEL": "debug",
    }
    config = load_config(env, str(tmp_path))

    assert config.dry_run is True
    assert config.export_threshold == 5
    assert config.watched_policy == WatchedPolicy.WATCHED_WINS
    assert config.state_file == "/data/state.json"
    assert config.backup_dir == os.path.join(str(tmp_path), "snapshots")
    assert config.debug_level == "DEBUG"


def test_invalid_values_fall_back(tmp_path: Path, log_messages: list[str]) -> None:
    config = load_config({"MAX_THREADS": "many", "DRYRUN": "maybe", "WATCHED_POLICY": "newest"}, str(tmp_path))

    assert config.max_threads == 10
    assert config.dry_run is False
    assert config.watched_policy == WatchedPolicy.PLAYED_SINCE_RESET
    assert any("MAX_THREADS" in m for m in log_messages)


def test_every_option_maps_to_a_config_field(tmp_path: Path) -> None:
    fields = set(Config.model_fields)
    assert all(option.field in fields for option in ENV_SPEC)

    config = load_config({"LIBRARY_SEGMENT": "0", "MAX_THREADS": "-3", "LOG_FILE": "/var/log/playsync.log"}, str(tmp_path))
    assert config.library_segment == 1
    assert config.max_threads == 1
    assert config.log_file == "/var/log/playsync.log"


def test_config_dir_is_read_when_loading(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    assert Config().config_dir == "config"

    monkeypatch.setenv("CONFIG_DIR", str(tmp_path))
    config = load_config({})

    assert config.config_dir == str(tmp_path)
    assert config.state_file == os.path.join(str(tmp_path), "watched_state.json")


def test_config_reads_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("EXPORT_THRESHOLD", raising=False)
    (tmp_path / ".env").write_text("EXPORT_THRESHOLD=42\n")

    config = load_config(config_dir=str(tmp_path))

    assert config.export_threshold == 42
    os.environ.pop("EXPORT_THRESHOLD", None)


def test_validate_cron() -> None:
    assert validate_cron("*/5 * * * *") == "*/5 * * * *"
    assert validate_cron('"0 3 * * 3"') == "0 3 * * 3"
    with pytest.raises(ConfigValidationError):
        validate_cron("not-a-cron", "CRON_SYNC_AT")
    with pytest.raises(ConfigValidationError):
        validate_cron("")


def test_invalid_timer_falls_back_and_keeps_task_enabled(log_messages: list[str]) -> None:
    tasks = load_tasks({"CRON_SYNC": "true", "CRON_SYNC_AT": "not-a-cron", "CRON_SYNC_ARGS": "--dry-run"})

    assert tasks["sync"].enabled is True
    assert tasks["sync"].timer == TASK_DEFAULTS["sync"][2]
    assert tasks["sync"].args == "--dry-run"
    assert any("CRON_SYNC_AT" in m for m in log_messages)


def test_dispatch_schedule_is_fixed() -> None:
    tasks = load_tasks({"CRON_DISPATCH": "false", "CRON_DISPATCH_AT": "0 0 * * *"})
    assert tasks["dispatch"].enabled is True
    assert tasks["dispatch"].timer == "* * * * *"
    assert tasks["dispatch"].hidden is True


def test_next_run_returns_every_task_due_first() -> None:
    tasks = load_tasks({"CRON_IMPORT": "true", "CRON_EXPORT": "true", "CRON_EXPORT_AT": "0 */1 * * *"})
    tasks = {name: task for name, task in tasks.items() if name in HANDLED_TASKS}

    at, due = next_run(tasks, datetime(2024, 5, 1, 10, 15))

    assert at == datetime(2024, 5, 1, 11, 0)
    assert sorted(t.name for t in due) == ["export", "import"]


def test_next_run_without_enabled_tasks() -> None:
    tasks = {name: task.model_copy(update={"enabled": False}) for name, task in load_tasks({}).items()}
    assert next_run(tasks, datetime(2024, 5, 1)) is None


def test_parse_task_args() -> None:
    assert parse_task_args("--dry-run --force-full") == {"dry_run": True, "force_full": True}
    assert parse_task_args("") == {"dry_run": False, "force_full": False}
    assert parse_task_args("--unknown") == {"dry_run": False, "force_full": False}
