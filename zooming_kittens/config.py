"""
Configuration loading for zooming-kittens.

Sources, lowest to highest precedence:
- built-in defaults
- $XDG_CONFIG_HOME/zooming-kittens/config.toml
- ZK_* environment variables (ZK_ZOOM__STEP sets zoom.step)
- command line overrides
"""

import logging
import os
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigError, ErrorCode
from .registry import RegistryConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "ZK_"
ENV_NESTED_DELIMITER = "__"


class ZoomMode(str, Enum):
    ADDITIVE = "additive"
    MULTIPLICATIVE = "multiplicative"
    ABSOLUTE = "absolute"


class ZoomSettings(BaseModel):
    """How a focused window is zoomed.

    additive:       +step on focus, -step on blur
    multiplicative: *factor on focus, /factor on blur
    absolute:       set target on focus, reset to the kitty.conf size on blur
    """

    mode: ZoomMode = ZoomMode.ADDITIVE
    step: float = Field(6.0, gt=0)
    factor: float = Field(1.5, gt=0)
    target: Optional[float] = Field(None, gt=0)

    @model_validator(mode="after")
    def check_target(self) -> "ZoomSettings":
        if self.mode == ZoomMode.ABSOLUTE and self.target is None:
            raise ValueError("zoom.target is required in absolute mode")
        return self


class Settings(BaseModel):
    """Daemon settings."""

    app_id: str = "kitty"
    backend: Literal["auto", "niri", "sway", "jsonl"] = "auto"
    socket_path: Optional[Path] = None
    verbose: bool = False

    socket_timeout_secs: float = Field(5.0, gt=0)
    max_retries: int = Field(3, ge=1)
    retry_delay_ms: int = Field(100, ge=0)
    max_connections: int = Field(30, ge=1)
    idle_timeout_secs: float = Field(1800.0, gt=0)
    reap_interval_secs: float = Field(300.0, gt=0)
    check_liveness: bool = True

    subscriber_buffer: int = Field(256, ge=1)
    process_names: List[str] = Field(default_factory=lambda: ["kitty"])
    zoom: ZoomSettings = Field(default_factory=ZoomSettings)

    def to_registry_config(self) -> RegistryConfig:
        return RegistryConfig(
            socket_timeout=self.socket_timeout_secs,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay_ms / 1000.0,
            max_connections=self.max_connections,
            idle_timeout=self.idle_timeout_secs,
            reap_interval=self.reap_interval_secs,
            check_liveness=self.check_liveness,
        )


def default_config_path(env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    base = env.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "zooming-kittens" / "config.toml"


def _merge(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if value is None:
            continue
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_toml(path: Path) -> Dict[str, Any]:
    """
    Read a TOML config file.

    Returns:
        Parsed table, or an empty dict if the file doesn't exist

    Raises:
        ConfigError: If the file can't be read or isn't valid TOML
    """
    if not path.exists():
        return {}

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(
            f"Cannot load {path}: {e}",
            code=ErrorCode.CONFIG_LOAD_FAILED,
            context={"path": str(path)},
        ) from e


def env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    """Collect ZK_* variables into a nested dict (ZK_ZOOM__STEP -> zoom.step)."""
    result: Dict[str, Any] = {}
    for name, value in env.items():
        if not name.startswith(ENV_PREFIX):
            continue
        path = name[len(ENV_PREFIX):].lower().split(ENV_NESTED_DELIMITER)
        if not all(path):
            continue

        if path == ["process_names"]:
            value = [part.strip() for part in value.split(",") if part.strip()]

        target = result
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = value
    return result


def load_settings(
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Settings:
    """
    Build Settings from defaults, config file, environment and overrides.

    Args:
        path: Config file (default: $XDG_CONFIG_HOME/zooming-kittens/config.toml)
        env: Environment mapping (default: os.environ)
        overrides: Highest-precedence values, e.g. from the command line. None values are ignored.

    Raises:
        ConfigError: If any source holds an invalid value
    """
    env = os.environ if env is None else env
    path = path or default_config_path(env)

    data = load_toml(path)
    if data:
        logger.debug(f"Loaded config from {path}")
    data = _merge(data, env_overrides(env))
    data = _merge(data, overrides or {})

    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}", context={"path": str(path)}) from e
