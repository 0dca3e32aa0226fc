"""Configuration management for lighttrack-browser.

This module handles loading configuration from defaults, config files, environment
variables, and CLI arguments. It enforces a strict priority order and validates every
value before the session starts. Supports XDG_CONFIG_HOME (Linux/macOS), APPDATA
(Windows), and ~/.config fallback.

The configuration is aggregated into a :class:`Config` dataclass, which serves as the
single source of truth for process settings. The companion port itself lives in the
durable settings store (see :mod:`lighttrack_browser.store`); a port given here is
written into that store at startup.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Supported Environment Variables:
    * ``LIGHTTRACK_PORT``: Companion port to store at startup.
    * ``LIGHTTRACK_SETTINGS_PATH``: Path of the JSON settings file.
    * ``LIGHTTRACK_TESTING``: Enable testing mode (in-process mock companion).
    * ``LIGHTTRACK_LOG_FILE``: Path to the log file.
    * ``LIGHTTRACK_LOG_LEVEL``: Logging level.
    * ``LIGHTTRACK_HEARTBEAT_INTERVAL``: Heartbeat period in seconds.
    * ``LIGHTTRACK_BROWSER``: Browser name reported in activity records.
    * ``LIGHTTRACK_USER_AGENT``: User agent used to derive the browser name.
    * ``LIGHTTRACK_HOST``: Loopback host name of the companion.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from lighttrack_browser.client import LOOPBACK_HOSTS
from lighttrack_browser.store import validate_port

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "load_config", "default_settings_path"]

APP_NAME = "lighttrack-browser"


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        port (Optional[int]): Companion port to store at startup. None keeps the stored value.
        settings_path (str): Absolute path of the JSON settings file.
        testing (bool): Whether to use the in-process mock companion. Defaults to False.
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "INFO".
        heartbeat_interval (float): Heartbeat period in seconds. Defaults to 30.0.
        browser (Optional[str]): Browser name for activity records. Derived when None.
        user_agent (Optional[str]): User agent string used to derive the browser name.
        host (str): Loopback host of the companion. Defaults to "localhost".
    """

    port: Optional[int]
    settings_path: str
    testing: bool
    log_file: Optional[str]
    log_level: str
    heartbeat_interval: float
    browser: Optional[str]
    user_agent: Optional[str]
    host: str


def _config_dir() -> Path:
    """Return the per-user configuration directory for this application."""
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(os.path.expanduser(xdg_config_home)) / APP_NAME
    if os.name == "nt" and os.environ.get("APPDATA"):
        return Path(os.path.expanduser(os.environ["APPDATA"])) / APP_NAME
    return Path(os.path.expanduser("~")) / ".config" / APP_NAME


def default_settings_path() -> str:
    return str(_config_dir() / "settings.json")


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority.

    Checks the local ``config.ini`` first, then ``config.ini`` in the per-user
    configuration directory.
    """
    return ["config.ini", str(_config_dir() / "config.ini")]


def _validate_settings_path(path_str: str) -> str:
    """Resolve the settings file path, expanding the user tilde.

    Raises:
        ValueError: If the path names a directory or a symlink.
    """
    path = Path(os.path.expanduser(path_str))
    if path.is_symlink():
        raise ValueError(f"Invalid settings path: Symlinks are not allowed: {path}")
    if path.exists() and not path.is_file():
        raise ValueError(f"Invalid settings path: not a regular file: {path}")
    return str(path.absolute())


def _validate_log_file(path_str: str) -> str:
    """Resolve the log file path and verify it can be written.

    Raises:
        ValueError: If the path is not a regular file or cannot be created/written.
    """
    path = Path(os.path.expanduser(path_str)).absolute()
    if path.exists() and not path.is_file():
        raise ValueError(f"Invalid path: Log file is not a regular file: {path}")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a"):
            pass
    except PermissionError as e:
        raise ValueError(f"Write permission denied for log file: {path}") from e
    except OSError as e:
        raise ValueError(f"Cannot create log file: {e}") from e
    return str(path)


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Args:
        args (Dict[str, Any]): Parsed CLI arguments, typically ``vars(parser.parse_args())``.
            Values of None are ignored so lower-priority sources can take effect.

    Returns:
        Config: The fully resolved and validated configuration.

    Raises:
        ValueError: If any value is invalid (port out of range, non-positive heartbeat
            interval, non-loopback host, unknown log level, unusable paths).

    Examples:
        >>> import os
        >>> os.environ["LIGHTTRACK_HEARTBEAT_INTERVAL"] = "15"
        >>> load_config({}).heartbeat_interval
        15.0
        >>> del os.environ["LIGHTTRACK_HEARTBEAT_INTERVAL"]
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "port": None,
        "settings_path": None,
        "testing": False,
        "log_file": None,
        "log_level": "INFO",
        "heartbeat_interval": 30.0,
        "browser": None,
        "user_agent": None,
        "host": "localhost",
    }

    # 2. Config File
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            parser = ConfigParser(interpolation=None)
            try:
                parser.read(path, encoding="utf-8-sig")
                if APP_NAME in parser:
                    for key, value in parser[APP_NAME].items():
                        if value is not None and value != "":
                            config_values[key] = value
            except (ConfigParserError, UnicodeDecodeError, OSError) as e:
                logger.error(f"Failed to parse config file {path}: {e}")
            break

    # 3. Environment Variables
    env_map = {
        "LIGHTTRACK_PORT": "port",
        "LIGHTTRACK_SETTINGS_PATH": "settings_path",
        "LIGHTTRACK_TESTING": "testing",
        "LIGHTTRACK_LOG_FILE": "log_file",
        "LIGHTTRACK_LOG_LEVEL": "log_level",
        "LIGHTTRACK_HEARTBEAT_INTERVAL": "heartbeat_interval",
        "LIGHTTRACK_BROWSER": "browser",
        "LIGHTTRACK_USER_AGENT": "user_agent",
        "LIGHTTRACK_HOST": "host",
    }
    for env_var, config_key in env_map.items():
        val = os.getenv(env_var)
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    if config_values["port"] is not None:
        config_values["port"] = validate_port(config_values["port"])

    try:
        config_values["heartbeat_interval"] = float(config_values["heartbeat_interval"])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid float for heartbeat_interval: {config_values['heartbeat_interval']}") from e
    if config_values["heartbeat_interval"] <= 0:
        raise ValueError(f"heartbeat_interval must be positive, got {config_values['heartbeat_interval']}")

    host = str(config_values["host"]).strip().lower()
    if host not in LOOPBACK_HOSTS:
        raise ValueError(f"host must be a loopback address ({', '.join(sorted(LOOPBACK_HOSTS))}), got {host}")
    config_values["host"] = host

    if isinstance(config_values["testing"], str):
        config_values["testing"] = config_values["testing"].lower() in ("true", "1", "yes", "on")

    if config_values["browser"] is not None:
        browser = str(config_values["browser"]).strip()
        if not browser:
            raise ValueError("browser must not be empty")
        config_values["browser"] = browser

    config_values["settings_path"] = _validate_settings_path(
        str(config_values["settings_path"] or default_settings_path())
    )

    if config_values["log_file"]:
        config_values["log_file"] = _validate_log_file(str(config_values["log_file"]))

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    if config_values["log_level"]:
        config_values["log_level"] = str(config_values["log_level"]).upper()
        if not isinstance(getattr(logging, config_values["log_level"], None), int):
            raise ValueError(f"Invalid log level: {config_values['log_level']}")

    # Filter out keys that are not in Config fields (e.g. 'debug' from CLI)
    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return Config(**filtered_values)
