from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass
from typing import Any, Mapping

from bellserver.decision import DEFAULT_EFFECTIVE_SOUNDS

DEFAULT_PORT = 8765


class ConfigError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class BellConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    effective_sounds: tuple[str, ...] = DEFAULT_EFFECTIVE_SOUNDS
    ring_cooldown_s: float = 1.0
    active_window_s: float = 5.0
    status_interval_s: float = 1.0
    class_map_path: str | None = None
    log_level: str = "INFO"


# JSON config keys (plugin-style camelCase accepted alongside the field names).
_FILE_KEYS: dict[str, str] = {
    "host": "host",
    "websocketPort": "port",
    "port": "port",
    "effective_sounds": "effective_sounds",
    "effectiveSounds": "effective_sounds",
    "ring_cooldown_s": "ring_cooldown_s",
    "ringCooldownS": "ring_cooldown_s",
    "active_window_s": "active_window_s",
    "activeWindowS": "active_window_s",
    "status_interval_s": "status_interval_s",
    "statusIntervalS": "status_interval_s",
    "class_map_path": "class_map_path",
    "classMapPath": "class_map_path",
    "log_level": "log_level",
    "logLevel": "log_level",
}

_ENV_KEYS: dict[str, str] = {
    "HOST": "host",
    "PORT": "port",
    "EFFECTIVE_SOUNDS": "effective_sounds",
    "RING_COOLDOWN_S": "ring_cooldown_s",
    "ACTIVE_WINDOW_S": "active_window_s",
    "STATUS_INTERVAL_S": "status_interval_s",
    "CLASS_MAP_PATH": "class_map_path",
    "LOG_LEVEL": "log_level",
}


def _parse_sounds(raw: Any) -> tuple[str, ...]:
    # Labels such as "Beep, bleep" contain commas, so env strings split on ";".
    if isinstance(raw, str):
        items = raw.split(";")
    elif isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        raise ConfigError(f"effective_sounds must be a list of labels (got {type(raw).__name__})")
    sounds: list[str] = []
    for item in items:
        if not isinstance(item, str):
            raise ConfigError(f"effective_sounds entries must be strings (got {item!r})")
        label = item.strip()
        if label and label not in sounds:
            sounds.append(label)
    return tuple(sounds)


def _coerce(field_name: str, raw: Any) -> Any:
    try:
        if field_name == "port":
            port = int(raw)
            if not 0 <= port <= 65535:
                raise ConfigError(f"port out of range: {port}")
            return port
        if field_name == "effective_sounds":
            return _parse_sounds(raw)
        if field_name in ("ring_cooldown_s", "active_window_s", "status_interval_s"):
            value = float(raw)
            if value < 0:
                raise ConfigError(f"{field_name} must be non-negative (got {value})")
            return value
        if field_name == "class_map_path":
            path = str(raw).strip()
            return path or None
        if field_name == "log_level":
            return str(raw).strip().upper() or "INFO"
        return str(raw).strip()
    except (TypeError, ValueError) as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(f"Invalid value for {field_name}: {raw!r}") from e


def load_config_file(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    values: dict[str, Any] = {}
    for key, raw in obj.items():
        field_name = _FILE_KEYS.get(key)
        if field_name is None or raw is None:
            continue
        values[field_name] = _coerce(field_name, raw)
    return values


def load_config(
    path: str | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> BellConfig:
    """Merge defaults < JSON file < environment < explicit overrides (CLI flags)."""
    values: dict[str, Any] = {}
    if path:
        values.update(load_config_file(path))

    environ = os.environ if env is None else env
    for env_key, field_name in _ENV_KEYS.items():
        raw = (environ.get(env_key) or "").strip()
        if raw:
            values[field_name] = _coerce(field_name, raw)

    for field_name, raw in (overrides or {}).items():
        if raw is None:
            continue
        if field_name not in {f.name for f in dataclasses.fields(BellConfig)}:
            raise ConfigError(f"Unknown config field {field_name}")
        values[field_name] = _coerce(field_name, raw)

    # An empty allow-list means "not configured": fall back to the built-in sounds.
    if not values.get("effective_sounds"):
        values.pop("effective_sounds", None)
    return BellConfig(**values)
