"""Configuration loading, environment defaults and hot reload.

The config file is YAML (``.yaml``/``.yml``) or JSON. A handful of
settings fall back to environment variables when the file leaves them
out, so a container can set the timezone or run limits without editing
the file:

    DEFAULT_TIMEZONE            timezone
    CONCIERGE_MODE              agent.mode
    MAX_EMAILS_PER_RUN          processing.max_emails_per_run
    FIRST_RUN_LOOKBACK_DAYS     processing.lookback_days
    DEDUPLICATION_WINDOW_DAYS   processing.deduplication_window_days

The validated AppConfig is kept as a process-wide singleton. The
scheduler calls reload_config_if_changed() before each run.

Usage:
    from concierge.config import get_config, reload_config_if_changed

    config = get_config()

    if reload_config_if_changed():
        config = get_config()
"""

import json
import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from concierge.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from concierge.core.errors import ConfigLoadError, ConfigValidationError
from concierge.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "CONCIERGE_CONFIG_PATH"

ENV_DEFAULTS: dict[tuple[str, ...], str] = {
    ("timezone",): "DEFAULT_TIMEZONE",
    ("agent", "mode"): "CONCIERGE_MODE",
    ("processing", "max_emails_per_run"): "MAX_EMAILS_PER_RUN",
    ("processing", "lookback_days"): "FIRST_RUN_LOOKBACK_DAYS",
    ("processing", "deduplication_window_days"): "DEDUPLICATION_WINDOW_DAYS",
}

_TYPE_HINTS = {
    "missing": "is required",
    "string_type": "must be a string",
    "int_type": "must be an integer",
    "int_parsing": "must be an integer",
    "float_type": "must be a number",
    "float_parsing": "must be a number",
    "bool_type": "must be true or false",
    "bool_parsing": "must be true or false",
    "literal_error": None,
}

_lock = threading.Lock()
_state: dict[str, Any] = {"config": None, "path": None, "mtime": 0.0}


def config_path_from_env() -> Path:
    return Path(os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def describe_validation_error(error: ValidationError) -> str:
    """One ``  - path: problem`` line per failing field."""
    lines = []
    for err in error.errors():
        field_path = ".".join(str(part) for part in err["loc"]) or "<root>"
        problem = _TYPE_HINTS.get(err["type"]) or err["msg"]
        lines.append(f"  - {field_path}: {problem}")
    return "\n".join(lines)


def read_config_file(path: Path) -> dict[str, Any]:
    """Parse a YAML or JSON config file into a mapping.

    Raises:
        ConfigLoadError: Missing file, unsupported extension, parse error,
            or a top level that is not a mapping
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Copy config/config.yaml.example there or point {CONFIG_PATH_ENV} at your file."
        )

    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        elif suffix == ".json":
            data = json.loads(text) if text.strip() else None
        else:
            raise ConfigLoadError(f"Unsupported config format: {path}. Use .yaml, .yml or .json")
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigLoadError(f"Cannot parse {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(f"Configuration must be a mapping at the top level, got {type(data).__name__}")
    return data


def apply_env_defaults(data: dict[str, Any], environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Fill settings the file leaves out from ENV_DEFAULTS.

    Values written in the file always win. The input is not modified.
    """
    environ = os.environ if environ is None else environ
    merged = {key: dict(value) if isinstance(value, dict) else value for key, value in data.items()}
    for path, env_name in ENV_DEFAULTS.items():
        value = environ.get(env_name)
        if not value:
            continue
        section = merged
        for key in path[:-1]:
            nested = section.get(key)
            if not isinstance(nested, dict):
                nested = {}
                section[key] = nested
            section = nested
        if path[-1] not in section:
            section[path[-1]] = value
            logger.debug("config_env_default", setting=".".join(path), env=env_name)
    return merged


def build_config(data: dict[str, Any], source: str = "<memory>") -> AppConfig:
    """Validate raw settings into an AppConfig.

    Raises:
        ConfigValidationError: On schema errors or a schema_version newer
            than this release understands
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration in {source} is invalid:\n{describe_validation_error(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"{source} uses schema version {config.schema_version}, which is newer than "
            f"the supported version {CURRENT_SCHEMA_VERSION}. Upgrade Family Concierge."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Read, apply environment defaults and validate, bypassing the singleton.

    Args:
        path: Config file; defaults to $CONCIERGE_CONFIG_PATH or config/config.yaml

    Raises:
        ConfigLoadError: If the file cannot be read or parsed
        ConfigValidationError: If validation fails
    """
    config_path = path or config_path_from_env()
    config = build_config(apply_env_defaults(read_config_file(config_path)), str(config_path))
    logger.info(
        "config_loaded",
        path=str(config_path),
        mode=config.agent.mode,
        packs=[p.pack_id for p in config.packs],
        family_members=len(config.family.members),
    )
    return config


def get_config() -> AppConfig:
    """The shared config, loaded on first use.

    The scheduler thread and the request handlers both call this, hence
    the lock.
    """
    with _lock:
        if _state["config"] is None:
            path = config_path_from_env()
            _state["config"] = load_config(path)
            _state["path"] = path
            _state["mtime"] = path.stat().st_mtime
        return _state["config"]


def reload_config_if_changed() -> bool:
    """Reload when the file's mtime moved forward.

    A broken edit keeps the running config; the bad mtime is remembered
    so it is reported once, not on every run.

    Returns:
        True when a new config was installed
    """
    with _lock:
        path: Path | None = _state["path"]
        if path is None:
            return False
        try:
            mtime = path.stat().st_mtime
        except OSError as e:
            logger.warning("config_stat_failed", path=str(path), error=str(e))
            return False
        if mtime <= _state["mtime"]:
            return False

        _state["mtime"] = mtime
        try:
            _state["config"] = load_config(path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning("config_reload_rejected", path=str(path), error=str(e))
            return False
        logger.info("config_reloaded", path=str(path))
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Check a config file without touching the singleton.

    Returns:
        (is_valid, message); the message summarises packs and family on success
    """
    try:
        config = load_config(path)
    except ConfigLoadError as e:
        return False, f"Load error: {e}"
    except ConfigValidationError as e:
        return False, f"Validation error: {e}"

    sources = sum(len(p.sources) for p in config.packs)
    summary = [
        f"Configuration valid (schema version {config.schema_version})",
        f"  - mode: {config.agent.mode}",
        f"  - timezone: {config.timezone}",
        f"  - {len(config.packs)} packs",
        f"  - {sources} sources",
        f"  - {len(config.family.members)} family members",
    ]
    return True, "\n".join(summary)


def reset_config() -> None:
    """Drop the singleton. Used by tests."""
    with _lock:
        _state.update(config=None, path=None, mtime=0.0)
