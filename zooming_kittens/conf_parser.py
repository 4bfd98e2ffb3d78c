"""Read the configured font size out of kitty.conf."""

import os
from pathlib import Path
from typing import Optional

from .errors import ConfigError, ErrorCode

KITTY_CONF_NAME = "kitty.conf"


def get_kitty_config_path() -> Path:
    """
    Locate kitty.conf under $XDG_CONFIG_HOME/kitty (or ~/.config/kitty).

    Raises:
        ConfigError: If kitty.conf doesn't exist
    """
    config_home = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    conf_path = Path(config_home) / "kitty" / KITTY_CONF_NAME

    if not conf_path.exists():
        raise ConfigError(
            f"kitty.conf not found at {conf_path}. Please create one.",
            code=ErrorCode.CONFIG_LOAD_FAILED,
        )
    return conf_path


def parse_font_size(config_path: Optional[Path] = None) -> float:
    """
    Return the first ``font_size`` directive in kitty.conf.

    Args:
        config_path: kitty.conf to read (default: get_kitty_config_path())

    Raises:
        ConfigError: If the file can't be read, or font_size is missing or not a number
    """
    conf_path = Path(config_path) if config_path else get_kitty_config_path()

    try:
        content = conf_path.read_text()
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {e}", code=ErrorCode.CONFIG_LOAD_FAILED) from e

    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        key, *value = line.split(None, 1)
        if key != "font_size":
            continue

        rest = value[0].strip() if value else ""
        if not rest:
            raise ConfigError("font_size found but has no value")
        try:
            return float(rest)
        except ValueError as e:
            raise ConfigError(f"Failed to parse font_size value '{rest}': {e}") from e

    raise ConfigError(f"font_size not found in {conf_path}")
