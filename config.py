#!/usr/bin/env python3
"""
Settings and logging for Feed Keeper.

Every tunable (database path, refresh cadence, retention, snapshot
directory) is read once from the environment, an optional `.env` beside
this file and an optional YAML secrets file, checked, and exposed through
the module-level `config` object. Logging is configured here as well so
that importing `config` is enough to get consistent output.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Configure the root logger once for every Feed Keeper module.

    Environment Variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR (default INFO)
        LOG_TIMESTAMPS: "false" drops the timestamp column (default true)

    Records go to stdout, line buffered, so container logs stay in order.
    Modules then call get_logger() for a child of the "FeedKeeper" logger.
    """
    environ["PYTHONUNBUFFERED"] = "1"

    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)

    if environ.get("LOG_TIMESTAMPS", "true").lower() == "false":
        log_format = '%(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    # pytest swaps stdout for a capture object without reconfigure()
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, "reconfigure"):
            stream.reconfigure(line_buffering=True)

    # Exporter chatter stays at WARNING unless AZURE_LOG_LEVEL says otherwise
    azure_level = level_map.get(environ.get("AZURE_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("azure", "azure.core", "azure.monitor"):
        getLogger(name).setLevel(azure_level)

    return getLogger("FeedKeeper")

def get_logger(name: str):
    """Return the "FeedKeeper.{name}" child logger (e.g. "fetcher", "backup")."""
    return getLogger(f"FeedKeeper.{name}")

logger = _setup_global_logger()

class Config:
    """Feed Keeper settings.

    Sources, later ones filling in what earlier ones leave unset:
    1. Process environment
    2. `.env` next to this file
    3. YAML secrets file named by SECRETS_FILE (exported into the environment)
    4. feeds.yaml, the subscription list consumed by `import`:

    ```yaml
    feeds:
      example:
        url: "https://example.com/feed.xml"
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Read settings from {dotenv_path}")

        self._load_secrets_file()

    def _read_number(self, env_var: str, default, min_val, cast=int):
        """Read a numeric setting, falling back to `default` when it is malformed or below `min_val`."""
        raw = environ.get(env_var)
        if raw is None or not raw.strip():
            return default
        try:
            value = cast(raw.strip())
        except ValueError:
            logger.warning(f"{env_var}={raw!r} is not a number, using {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var}={value} is below the minimum of {min_val}, using {default}")
            return default
        return value

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        return self._read_number(env_var, default, min_val, int)

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        return self._read_number(env_var, default, min_val, float)

    def _parse_int(self, env_var: str, default: int) -> int:
        """Integer setting with no lower bound; zero or negative means 'disabled'."""
        return self._read_number(env_var, default, float("-inf"), int)

    def _validate_and_set_config(self):
        """Read every setting, applying defaults and lower bounds."""
        base_dir = path.dirname(path.abspath(__file__))

        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.USER_AGENT = environ.get("USER_AGENT", "feed-keeper/1.0 (+https://github.com/feed-keeper)")
        self.DB_BUSY_TIMEOUT_MS = self._validate_positive_int("DB_BUSY_TIMEOUT_MS", 5000, 0)

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Refresh loop
        self.REFRESH_INTERVAL_MINUTES = self._validate_positive_int("REFRESH_INTERVAL_MINUTES", 60, 1)
        self.REFRESH_BATCH_SIZE = self._validate_positive_int("REFRESH_BATCH_SIZE", 1000, 1)
        self.FEED_PACING_SECONDS = self._validate_positive_float("FEED_PACING_SECONDS", 1.0, 0.0)

        # Retention; zero or negative disables both the age filter and the purge loop
        self.PURGE_DAYS = self._parse_int("PURGE_DAYS", 30)
        self.PURGE_STARTUP_DELAY_SECONDS = self._validate_positive_float("PURGE_STARTUP_DELAY_SECONDS", 30.0, 0.0)
        self.PURGE_INTERVAL_HOURS = self._validate_positive_int("PURGE_INTERVAL_HOURS", 24, 1)

        # Snapshots; an empty BACKUP_DIR disables the periodic snapshot loop
        self.BACKUP_DIR = environ.get("BACKUP_DIR", "").strip()
        self.BACKUP_INTERVAL_HOURS = self._validate_positive_int("BACKUP_INTERVAL_HOURS", 24, 1)
        self.BACKUP_KEEP = self._parse_int("BACKUP_KEEP", 7)
        self.BACKUP_STARTUP_DELAY_SECONDS = self._validate_positive_float("BACKUP_STARTUP_DELAY_SECONDS", 30.0, 0.0)

        # File paths
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _load_secrets_file(self):
        """Export the keys of the SECRETS_FILE mapping into the environment.

        The mapping may sit at the top level or under an `environment` key.
        """
        secrets_path = environ.get("SECRETS_FILE")
        if not secrets_path:
            return

        data = self._safe_read_yaml(secrets_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(data, dict):
            if data is not None:
                logger.warning(f"Ignoring {secrets_path}: expected a mapping of NAME: value")
            return

        values = data['environment'] if isinstance(data.get('environment'), dict) else data
        exported = 0
        for key, value in values.items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Ignoring secrets entry {key!r}")
                continue
            environ[key] = str(value)
            exported += 1
        logger.info(f"Exported {exported} settings from {secrets_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Parse a YAML file, or return None (after logging why) if it is missing, oversized or broken.

        `kind` only labels the log messages ('secrets', 'feeds').
        """
        if not path.isfile(file_path):
            logger.warning(f"No {kind} file at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"{kind} file {file_path} is not readable")
            return None
        try:
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind} file {file_path} is {size} bytes, over the {max_size} byte limit")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Cannot parse {kind} file {file_path}: {e}")
            return None
        except OSError as e:
            logger.error(f"Cannot read {kind} file {file_path}: {e}")
            return None
        if not data:
            logger.warning(f"{kind} file {file_path} is empty")
            return None
        return data

    def _load_feed_sources(self) -> None:
        """Set FEED_SOURCES (slug -> url) from the `feeds:` section; empty on any problem."""
        feeds_path = self.FEEDS_CONFIG_PATH
        data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        section = data.get('feeds') if isinstance(data, dict) else None
        self.FEED_SOURCES = {}
        if not isinstance(section, dict):
            if data is not None:
                logger.warning(f"{feeds_path} has no `feeds:` mapping")
            return

        for slug, entry in section.items():
            url = entry.get('url') if isinstance(entry, dict) else None
            if not isinstance(url, str) or not url.strip():
                logger.warning(f"Skipping feed '{slug}' in {feeds_path}: no url")
                continue
            self.FEED_SOURCES[slug] = url.strip()

        logger.info(f"📋 {len(self.FEED_SOURCES)} feeds listed in {feeds_path}")

    def feed_urls(self) -> List[str]:
        """Return the configured feed URLs in file order."""
        return list(self.FEED_SOURCES.values())

    def get_config_summary(self) -> Dict[str, Any]:
        """Settings worth logging at service start (no secrets)."""
        return {
            "database_path": self.DATABASE_PATH,
            "refresh_interval_minutes": self.REFRESH_INTERVAL_MINUTES,
            "refresh_batch_size": self.REFRESH_BATCH_SIZE,
            "feed_pacing_seconds": self.FEED_PACING_SECONDS,
            "http_timeout": self.HTTP_TIMEOUT,
            "purge_days": self.PURGE_DAYS,
            "backup_dir": self.BACKUP_DIR or None,
            "backup_interval_hours": self.BACKUP_INTERVAL_HOURS,
            "backup_keep": self.BACKUP_KEEP,
            "feed_count": len(self.FEED_SOURCES),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Shared settings, read once at import
config = Config()
