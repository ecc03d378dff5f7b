import os
import time

def str_to_bool(value: str | bool | None) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return value.strip().lower() in ("y", "yes", "t", "true", "on", "1")


def is_bool_string(value: str) -> bool:
    return value.strip().lower() in ("y", "yes", "t", "true", "on", "1", "n", "no", "f", "false", "off", "0")


# Get mapped value
def parse_string_to_list(string: str | None) -> list[str]:
    output: list[str] = []
    if string and len(string) > 0:
        output = [x.strip() for x in string.split(",")]

    return output


def resolve_path(value: str | None, default: str, base_dir: str) -> str:
    """Absolute paths are kept, relative ones are placed under base_dir."""
    if value and os.path.isabs(value):
        return value
    return os.path.join(base_dir, value or default)


def now_ts() -> int:
    return int(time.time())
