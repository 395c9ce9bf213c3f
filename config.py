#!/usr/bin/env python3
"""
Configuration management for Gator.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the optional secrets file, and the per-user
gator config file that remembers which user is currently logged in.
"""

from dataclasses import dataclass
from os import environ, path, access, R_OK
from typing import Dict, Any, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

from errors import ConfigError


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering so that per-tick summaries
    show up while `agg` is running. All modules should use get_logger().
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except AttributeError:
        # Captured streams under test runners do not support reconfigure
        pass

    # aiohttp access/client chatter is noise at INFO
    getLogger("aiohttp").setLevel(WARNING)

    return getLogger("Gator")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "aggregator", "scheduler")

    Returns:
        A logger named "Gator.{name}"
    """
    return getLogger(f"Gator.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager for Gator.

    Values are loaded from, in increasing priority:
    1. Environment variables
    2. .env file next to this module (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.debug(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "gator.db")
        self.USER_AGENT = environ.get("USER_AGENT", "gator")
        self.GATOR_CONFIG_PATH = environ.get(
            "GATOR_CONFIG_PATH", path.join(path.expanduser("~"), ".gatorconfig.yaml")
        )

        # HTTP request configuration
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 2, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Browse output
        self.BROWSE_DEFAULT_LIMIT = self._validate_positive_int("BROWSE_DEFAULT_LIMIT", 2, 1)
        self.DESCRIPTION_PREVIEW_CHARS = self._validate_positive_int("DESCRIPTION_PREVIEW_CHARS", 100, 10)

        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 1, 1)

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Expected YAML format is a top-level mapping, for example:
        ```yaml
        DATABASE_PATH: "/var/lib/gator/gator.db"
        USER_AGENT: "gator/1.0 (+https://example.com)"
        ```
        A nested `environment:` mapping is also accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}={value}")

        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "gator_config_path": self.GATOR_CONFIG_PATH,
            "user_agent": self.USER_AGENT,
            "max_retries": self.MAX_RETRIES,
            "http_timeout": self.HTTP_TIMEOUT,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()


# ----------------------------------------------------------------------
# Per-user gator config file
# ----------------------------------------------------------------------

@dataclass
class Session:
    """Explicit command context: where the data lives and who is logged in."""

    db_path: str
    current_user_name: Optional[str] = None
    config_path: Optional[str] = None


def _user_config_path(config_path: Optional[str]) -> str:
    return config_path or config.GATOR_CONFIG_PATH


def read_user_config(config_path: Optional[str] = None) -> Session:
    """Read the gator config file into a Session.

    A missing file is not an error: the session falls back to DATABASE_PATH
    with nobody logged in. Anything that is not a mapping, or has values of the
    wrong type, raises ConfigError.
    """
    file_path = _user_config_path(config_path)
    session = Session(db_path=config.DATABASE_PATH, config_path=file_path)

    if not path.isfile(file_path):
        logger.debug(f"Gator config not found at {file_path}; using defaults")
        return session

    try:
        with open(file_path, 'r') as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid config file {file_path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Could not read config file {file_path}: {e}") from e

    if raw is None:
        return session
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid config file structure in {file_path}: expected a mapping")

    db_path = raw.get('db_path')
    if db_path is not None:
        if not isinstance(db_path, str) or not db_path.strip():
            raise ConfigError(f"Invalid db_path in {file_path}")
        session.db_path = db_path

    user_name = raw.get('current_user_name')
    if user_name is not None:
        if not isinstance(user_name, str):
            raise ConfigError(f"Invalid current_user_name in {file_path}")
        session.current_user_name = user_name

    return session


def write_user_config(session: Session) -> None:
    """Persist a Session back to the gator config file."""
    file_path = _user_config_path(session.config_path)
    data = {'db_path': session.db_path}
    if session.current_user_name:
        data['current_user_name'] = session.current_user_name
    try:
        with open(file_path, 'w') as f:
            yaml.safe_dump(data, f, default_flow_style=False)
    except OSError as e:
        raise ConfigError(f"Could not write config file {file_path}: {e}") from e


def set_user(session: Session, user_name: str) -> Session:
    """Make `user_name` the current user and persist it.

    Returns the updated session; the caller's session object is updated too.
    """
    session.current_user_name = user_name
    write_user_config(session)
    return session
