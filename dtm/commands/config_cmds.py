from __future__ import annotations

from dataclasses import fields

from rich import print

from dtm.config import INT_KEYS, DtmConfig

from .common import fail, read_config_or_exit, write_config_or_exit


def config_set_cmd(*, key: str, value: str | None) -> None:
    """Store one setting in the config file; an empty value removes it."""

    known = {f.name for f in fields(DtmConfig)}
    if key not in known:
        raise fail(f"Unknown config key: {key} (expected one of {', '.join(sorted(known))})")
    data = read_config_or_exit()
    if value is None or not value.strip():
        data.pop(key, None)
    elif key in INT_KEYS:
        try:
            number = int(value)
        except ValueError as exc:
            raise fail(f"{key} must be an integer") from exc
        if number <= 0:
            raise fail(f"{key} must be positive")
        data[key] = number
    else:
        data[key] = value.strip()
    path = write_config_or_exit(data)
    print(f"Updated {path}")
