from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import jsonschema

from .buffer import DEFAULT_MAX_BYTES, DEFAULT_MAX_ENTRIES
from .errors import ConfigError
from .replay.recorder import MAX_EVENTS
from .security import SecurityLevel

ENV_PREFIX = "PTYBATTLE_"

CONFIG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "cols": {"type": "integer", "minimum": 1},
        "rows": {"type": "integer", "minimum": 1},
        "cwd": {"type": ["string", "null"]},
        "env": {
            "type": ["object", "null"],
            "additionalProperties": {"type": "string"},
        },
        "timeout": {"type": "number", "exclusiveMinimum": 0},
        "grace_timeout": {"type": "number", "exclusiveMinimum": 0},
        "verbose": {"type": "boolean"},
        "security_level": {"enum": [level.value for level in SecurityLevel]},
        "screenshot_dir": {"type": "string"},
        "log_dir": {"type": "string"},
        "buffer_max_entries": {"type": "integer", "minimum": 1},
        "buffer_max_bytes": {"type": "integer", "minimum": 1},
        "max_events": {"type": "integer", "minimum": 1},
        "backend": {"enum": ["auto", "asyncio", "thread"]},
        "sanitize_args": {"type": "boolean"},
        "screenshot_on_resize": {"type": "boolean"},
        "log_to_file": {"type": "boolean"},
    },
    "additionalProperties": False,
}


@dataclass(slots=True)
class SessionOptions:
    cols: int = 80
    rows: int = 24
    cwd: Path | None = None
    env: dict[str, str] | None = None
    timeout: float = 10.0
    grace_timeout: float = 5.0
    verbose: bool = False
    security_level: SecurityLevel = SecurityLevel.BALANCED
    screenshot_dir: Path = Path("./screenshots")
    log_dir: Path = Path("./logs")
    buffer_max_entries: int = DEFAULT_MAX_ENTRIES
    buffer_max_bytes: int = DEFAULT_MAX_BYTES
    max_events: int = MAX_EVENTS
    backend: str = "auto"
    sanitize_args: bool = False
    screenshot_on_resize: bool = True
    log_to_file: bool = False

    def __post_init__(self) -> None:
        self.security_level = SecurityLevel(self.security_level)
        if self.cwd is not None:
            self.cwd = Path(self.cwd)
        self.screenshot_dir = Path(self.screenshot_dir)
        self.log_dir = Path(self.log_dir)

    def merged(self, **overrides: Any) -> SessionOptions:
        """Copy with every non-``None`` override applied."""
        return replace(self, **{key: value for key, value in overrides.items() if value is not None})


_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "COLS": ("cols", int),
    "ROWS": ("rows", int),
    "TIMEOUT": ("timeout", float),
    "SECURITY_LEVEL": ("security_level", str),
    "SCREENSHOT_DIR": ("screenshot_dir", str),
    "LOG_DIR": ("log_dir", str),
    "BACKEND": ("backend", str),
    "VERBOSE": ("verbose", bool),
}

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


def load_options(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> SessionOptions:
    """Build session options from defaults, an optional JSON file and the environment.

    Environment variables prefixed with ``PTYBATTLE_`` win over the file,
    which wins over the defaults.
    """

    data: dict[str, Any] = {}
    if path is not None:
        data.update(_read_config_file(Path(path)))

    env = os.environ if environ is None else environ
    data.update(_read_environment(env))

    try:
        jsonschema.validate(instance=data, schema=CONFIG_SCHEMA)
    except jsonschema.ValidationError as exc:
        msg = f"Invalid configuration: {exc.message}"
        raise ConfigError(msg) from exc

    known = {field.name for field in fields(SessionOptions)}
    return SessionOptions(**{key: value for key, value in data.items() if key in known})


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        msg = f"Cannot read configuration file {path.name}: {exc.strerror}"
        raise ConfigError(msg) from exc
    except ValueError as exc:
        msg = f"Configuration file {path.name} is not valid JSON: {exc}"
        raise ConfigError(msg) from exc
    if not isinstance(payload, dict):
        msg = f"Configuration file {path.name} must hold a JSON object"
        raise ConfigError(msg)
    return payload


def _read_environment(environ: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for suffix, (name, kind) in _ENV_FIELDS.items():
        raw = environ.get(f"{ENV_PREFIX}{suffix}")
        if raw is None:
            continue
        values[name] = _coerce(f"{ENV_PREFIX}{suffix}", raw, kind)
    return values


def _coerce(variable: str, raw: str, kind: type) -> Any:
    if kind is bool:
        lowered = raw.strip().lower()
        if lowered in _TRUTHY:
            return True
        if lowered in _FALSY:
            return False
        msg = f"{variable} must be a boolean, got {raw!r}"
        raise ConfigError(msg)
    try:
        return kind(raw)
    except ValueError as exc:
        msg = f"{variable} must be {kind.__name__}, got {raw!r}"
        raise ConfigError(msg) from exc
