"""Configuration management for debounce-watch.

This module turns command-line arguments, environment variables and an
optional config file into a validated :class:`Config`. The three positional
inputs (delay, paths, command) only come from the command line; logging and
shell options can be set from any source.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Supported Environment Variables:
    * ``DEBOUNCE_WATCH_SHELL``: Run the command through the system shell.
    * ``DEBOUNCE_WATCH_LOG_FILE``: Path to the log file.
    * ``DEBOUNCE_WATCH_LOG_LEVEL``: Logging level.

Every watched directory must exist when the configuration is loaded. A
missing directory raises :class:`MissingDirectoryError`; it is never
silently skipped.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "MissingDirectoryError", "load_config", "parse_directories"]

CONFIG_SECTION = "debounce-watch"


class MissingDirectoryError(ValueError):
    """Raised when one or more configured directories do not exist.

    Attributes:
        paths (List[str]): The missing paths, in configuration order.
    """

    def __init__(self, paths: Sequence[str]) -> None:
        self.paths = list(paths)
        super().__init__(f"Directory does not exist: {', '.join(self.paths)}")


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        delay (int): Total debounce window in seconds.
        directories (List[str]): Absolute paths of the directories to watch.
        command (List[str]): The command and its arguments.
        shell (bool): Run the command through the system shell. Defaults to False.
        log_file (Optional[str]): Path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "INFO".
    """

    delay: int
    directories: List[str]
    command: List[str]
    shell: bool = False
    log_file: Optional[str] = None
    log_level: str = "INFO"


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority.

    Checks the following locations:
    1. Local `config.ini` (current working directory).
    2. `$XDG_CONFIG_HOME/debounce-watch/config.ini` (Linux/macOS).
    3. `%APPDATA%\\debounce-watch\\config.ini` (Windows).
    4. `~/.config/debounce-watch/config.ini` (Fallback).

    Returns:
        List[str]: A list of file paths to check for configuration.
    """
    paths = ["config.ini"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(os.path.join(os.path.expanduser(xdg_config_home), "debounce-watch", "config.ini"))
    elif os.name == "nt" and os.environ.get("APPDATA"):
        paths.append(os.path.join(os.path.expanduser(os.environ["APPDATA"]), "debounce-watch", "config.ini"))
    else:
        paths.append(os.path.join(os.path.expanduser("~"), ".config", "debounce-watch", "config.ini"))
    return paths


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def _parse_delay(value: Any) -> int:
    """Parse the debounce delay.

    Args:
        value (Any): Raw delay, usually the DEBOUNCE_SECONDS argument.

    Returns:
        int: The delay in whole seconds.

    Raises:
        ValueError: If the delay is missing, not an integer or negative.
    """
    if value is None or value == "":
        raise ValueError("Missing debounce delay")
    try:
        delay = int(str(value).strip())
    except ValueError as e:
        raise ValueError(f"Invalid integer for debounce delay: {value}") from e
    if delay < 0:
        raise ValueError(f"Debounce delay must be non-negative, got {delay}")
    return delay


def parse_directories(paths: Any) -> List[str]:
    """Resolve and validate the directories to watch.

    Accepts either a comma-separated string (the PATHS argument) or a list.
    Blank entries are ignored and duplicates collapsed, keeping the first
    occurrence. Each path is expanded (``~``) and made absolute.

    Args:
        paths (Any): Comma-separated string or sequence of paths.

    Returns:
        List[str]: Absolute directory paths, in configuration order.

    Raises:
        ValueError: If no path is given.
        MissingDirectoryError: If any path is not an existing directory.

    Example:
        >>> parse_directories("/tmp")
        ['/tmp']
    """
    if paths is None:
        raw: List[str] = []
    elif isinstance(paths, str):
        raw = paths.split(",")
    else:
        raw = [str(p) for p in paths]

    directories: List[str] = []
    missing: List[str] = []
    for entry in raw:
        entry = entry.strip()
        if not entry:
            continue
        resolved = str(Path(os.path.expanduser(entry)).resolve())
        if resolved in directories or entry in missing:
            continue
        if not os.path.isdir(resolved):
            missing.append(entry)
            continue
        directories.append(resolved)

    if missing:
        for entry in missing:
            logger.error(f"Watch directory does not exist: {entry}")
        raise MissingDirectoryError(missing)
    if not directories:
        raise ValueError("At least one directory to watch is required")
    return directories


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Args:
        args (Dict[str, Any]): Dictionary of parsed CLI arguments from argparse.
            ``delay``, ``paths`` and ``command`` are required; ``shell``,
            ``log_file``, ``log_level`` and ``debug`` are optional. Values of
            None are ignored so that lower-priority sources take effect.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ValueError: If the delay, command or log level is invalid.
        MissingDirectoryError: If any configured directory does not exist.
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "shell": False,
        "log_file": None,
        "log_level": "INFO",
    }

    # 2. Config File
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            parser = ConfigParser(interpolation=None)
            try:
                parser.read(path, encoding="utf-8-sig")
                if CONFIG_SECTION in parser:
                    for key, value in parser[CONFIG_SECTION].items():
                        if key in config_values and value:
                            config_values[key] = value
            except (ConfigParserError, UnicodeDecodeError, OSError) as e:
                logger.error(f"Failed to parse config file {path}: {e}")
            break

    # 3. Environment Variables
    env_map = {
        "DEBOUNCE_WATCH_SHELL": "shell",
        "DEBOUNCE_WATCH_LOG_FILE": "log_file",
        "DEBOUNCE_WATCH_LOG_LEVEL": "log_level",
    }
    for env_var, config_key in env_map.items():
        val = os.getenv(env_var)
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    config_values["delay"] = _parse_delay(config_values.get("delay"))

    command = config_values.get("command") or []
    if isinstance(command, str):
        command = [command]
    config_values["command"] = [str(part) for part in command]
    if not config_values["command"]:
        raise ValueError("A command to run is required")

    config_values["shell"] = _parse_bool(config_values["shell"])

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"
    config_values["log_level"] = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, config_values["log_level"], None), int):
        raise ValueError(f"Invalid log level: {config_values['log_level']}")

    if config_values["log_file"]:
        config_values["log_file"] = str(Path(os.path.expanduser(str(config_values["log_file"]))).absolute())

    # Directories last so that argument errors are reported before missing paths
    config_values["directories"] = parse_directories(config_values.get("paths"))

    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}
    return Config(**filtered_values)
