import os
from datetime import datetime
from typing import Any, Literal, Mapping
from croniter import croniter
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from playsync.errors import ConfigValidationError
from playsync.functions import is_bool_string, resolve_path, str_to_bool
from playsync.watched import WatchedPolicy


class OptionSpec(BaseModel):
    key: str
    field: str
    type: Literal["bool", "int", "string"]
    default: Any = None
    description: str = ""
    minimum: int | None = None
    # Relative values are placed under the config directory
    path: bool = False


# Options recognized from the environment (or $CONFIG_DIR/.env)
ENV_SPEC: tuple[OptionSpec, ...] = (
    OptionSpec(key="DRYRUN", field="dry_run", type="bool", default=False, description="Compute and log changes without sending them."),
    OptionSpec(key="API_KEY", field="api_key", type="string", default=None, description="Key required by the API endpoints."),
    OptionSpec(key="SECURE_API_ENDPOINTS", field="secure_api_endpoints", type="bool", default=False, description="Require the API key on every endpoint."),
    OptionSpec(key="TRUST_PROXY", field="trust_proxy", type="bool", default=False, description="Trust the client ip header set by a reverse proxy."),
    OptionSpec(key="TRUST_HEADER", field="trust_header", type="string", default="X-Forwarded-For", description="Header holding the real client ip."),
    OptionSpec(key="LIBRARY_SEGMENT", field="library_segment", type="int", default=1_000, minimum=1, description="Page size for backend library requests."),
    OptionSpec(key="EXPORT_THRESHOLD", field="export_threshold", type="int", default=1_000, description="Diff count that turns an export into a full resync."),
    OptionSpec(key="EXPORT_NOT_FOUND", field="export_not_found", type="int", default=259_200, description="Seconds an item may be missing from a backend before it is pruned."),
    OptionSpec(key="EVENTS_LISTENERS_CACHE", field="events_listeners_cache", type="int", default=60, description="Seconds to cache the events listener list."),
    OptionSpec(key="PUSH_ENABLED", field="push_enabled", type="bool", default=False, description="Push play state to backends as events arrive."),
    OptionSpec(key="SYNC_PROGRESS", field="sync_progress", type="bool", default=False, description="Sync playback progress of unwatched items."),
    OptionSpec(key="EPISODES_DISABLE_GUID", field="episodes_disable_guid", type="bool", default=True, description="Match episodes by show guid and numbering instead of their own guids."),
    OptionSpec(
        key="WATCHED_POLICY",
        field="watched_policy",
        type="string",
        default=WatchedPolicy.PLAYED_SINCE_RESET.value,
        description="played_since_reset, most_recent or watched_wins.",
    ),
    OptionSpec(key="MAX_THREADS", field="max_threads", type="int", default=10, minimum=1, description="Concurrent backend requests per dispatch."),
    OptionSpec(key="REQUEST_TIMEOUT", field="request_timeout", type="int", default=300, description="Timeout in seconds of one backend request."),
    OptionSpec(key="RUN_TIMEOUT", field="run_timeout", type="int", default=0, description="Timeout in seconds of one dispatch batch, 0 disables."),
    OptionSpec(key="WATCHED_STATE_FILE", field="state_file", type="string", default="watched_state.json", path=True, description="State file, relative to CONFIG_DIR."),
    OptionSpec(key="BACKUP_DIR", field="backup_dir", type="string", default="backup", path=True, description="Backup directory, relative to CONFIG_DIR."),
    OptionSpec(key="LOG_FILE", field="log_file", type="string", default="log.log", path=True, description="Log file, relative to CONFIG_DIR."),
    OptionSpec(key="DEBUG_LEVEL", field="debug_level", type="string", default="INFO", description="INFO, DEBUG or TRACE."),
    OptionSpec(key="SSL_BYPASS", field="ssl_bypass", type="bool", default=False, description="Skip ssl hostname validation."),
    OptionSpec(key="RUN_ONLY_ONCE", field="run_only_once", type="bool", default=False, description="Run one sync pass and exit."),
)

# name -> (info, enabled by default, default timer)
TASK_DEFAULTS: dict[str, tuple[str, bool, str]] = {
    "import": ("Import data from backends.", False, "0 */1 * * *"),
    "export": ("Export data to backends.", False, "30 */1 * * *"),
    "sync": ("Sync play state between backends.", False, "9 */3 * * *"),
    "backup": ("Backup the play state.", True, "0 6 */3 * *"),
    "prune": ("Remove stale backend records.", True, "0 */12 * * *"),
    "indexes": ("Rebuild the guid index.", True, "0 3 * * 3"),
    "dispatch": ("Dispatch queued events to their listeners.", True, "* * * * *"),
}

# Tasks whose schedule can not be changed from the environment
FIXED_TASKS = ("dispatch",)


class TaskConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    info: str = ""
    enabled: bool = False
    timer: str
    args: str = ""
    hidden: bool = False


class Config(BaseModel):
    model_config = ConfigDict(frozen=True)

    config_dir: str = "config"
    dry_run: bool = False
    api_key: str | None = None
    secure_api_endpoints: bool = False
    trust_proxy: bool = False
    trust_header: str = "X-Forwarded-For"
    library_segment: int = 1_000
    export_threshold: int = 1_000
    export_not_found: int = 259_200
    events_listeners_cache: int = 60
    push_enabled: bool = False
    sync_progress: bool = False
    episodes_disable_guid: bool = True
    watched_policy: WatchedPolicy = WatchedPolicy.PLAYED_SINCE_RESET
    max_threads: int = 10
    request_timeout: int = 300
    run_timeout: int = 0
    state_file: str = os.path.join("config", "watched_state.json")
    backup_dir: str = os.path.join("config", "backup")
    log_file: str = os.path.join("config", "log.log")
    debug_level: str = "INFO"
    ssl_bypass: bool = False
    run_only_once: bool = False
    tasks: dict[str, TaskConfig] = Field(default_factory=dict)


def validate_cron(value: str | None, key: str = "timer") -> str:
    if not value or not value.strip():
        raise ConfigValidationError(key, "Invalid cron expression. Empty value.")

    value = value.strip()
    if value.startswith('"') and value.endswith('"'):
        value = value[1:-1]

    try:
        croniter(value, datetime.now()).get_next(datetime)
    except (ValueError, KeyError, TypeError) as e:
        raise ConfigValidationError(key, f"Invalid cron expression. {e}") from e

    return value


def _get_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    value = env.get(key)
    if value is None or value == "":
        return default
    if not is_bool_string(value):
        logger.warning(f"[System] {key}='{value}' is not a boolean, using default '{default}'")
        return default
    return str_to_bool(value)


def _get_int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value.replace("_", ""))
    except ValueError:
        logger.warning(f"[System] {key}='{value}' is not a number, using default '{default}'")
        return default


def _get_str(env: Mapping[str, str], key: str, default: str | None) -> str | None:
    value = env.get(key)
    return value if value not in (None, "") else default


def load_tasks(env: Mapping[str, str]) -> dict[str, TaskConfig]:
    tasks: dict[str, TaskConfig] = {}
    for name, (info, enabled, timer) in TASK_DEFAULTS.items():
        if name in FIXED_TASKS:
            tasks[name] = TaskConfig(name=name, info=info, enabled=enabled, timer=timer, hidden=True)
            continue

        prefix = f"CRON_{name.upper()}"
        value = _get_str(env, f"{prefix}_AT", timer)
        try:
            value = validate_cron(value, f"{prefix}_AT")
        except ConfigValidationError as e:
            logger.warning(f"[System] {e}. Falling back to '{timer}'.")
            value = timer

        tasks[name] = TaskConfig(
            name=name,
            info=info,
            enabled=_get_bool(env, prefix, enabled),
            timer=value,
            args=_get_str(env, f"{prefix}_ARGS", "") or "",
        )
    return tasks


def load_config(environ: Mapping[str, str] | None = None, config_dir: str | None = None) -> Config:
    """Build the process configuration once. Reads $CONFIG_DIR/.env when no environ is given."""
    config_dir = config_dir or os.getenv("CONFIG_DIR", os.path.join(os.getcwd(), "config"))
    if environ is None:
        load_dotenv(os.path.join(config_dir, ".env"), override=True)
        environ = os.environ
    env = environ

    values: dict[str, Any] = {}
    for option in ENV_SPEC:
        if option.type == "bool":
            value = _get_bool(env, option.key, option.default)
        elif option.type == "int":
            value = _get_int(env, option.key, option.default)
            if option.minimum is not None:
                value = max(option.minimum, value)
        elif option.path:
            value = resolve_path(_get_str(env, option.key, None), option.default, config_dir)
        else:
            value = _get_str(env, option.key, option.default)
        values[option.field] = value

    policy_value = values["watched_policy"]
    try:
        values["watched_policy"] = WatchedPolicy(policy_value.lower())
    except ValueError:
        logger.warning(f"[System] Unknown WATCHED_POLICY '{policy_value}', using '{WatchedPolicy.PLAYED_SINCE_RESET.value}'")
        values["watched_policy"] = WatchedPolicy.PLAYED_SINCE_RESET

    values["debug_level"] = values["debug_level"].upper()

    return Config(config_dir=config_dir, tasks=load_tasks(env), **values)


def next_run(tasks: Mapping[str, TaskConfig], now: datetime) -> tuple[datetime, list[TaskConfig]] | None:
    """Earliest time after now at which enabled tasks are due, with every task due then."""
    upcoming: list[tuple[datetime, TaskConfig]] = []
    for task in tasks.values():
        if not task.enabled:
            continue
        upcoming.append((croniter(task.timer, now).get_next(datetime), task))

    if not upcoming:
        return None

    at = min(x[0] for x in upcoming)
    return at, [task for when, task in upcoming if when == at]
