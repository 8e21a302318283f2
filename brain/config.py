"""Runtime settings for the memory pipeline.

Values come from an optional YAML file, overridden by environment variables
(a ``.env`` file is honoured through python-dotenv). Invalid values never
abort startup: each one falls back to its default and a warning is logged.
"""

import logging
import os
import re
from dataclasses import dataclass, fields
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from brain.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW = timedelta(minutes=5)
DEFAULT_DEBOUNCE_WINDOW = timedelta(minutes=5)
DEFAULT_POLL_INTERVAL = timedelta(seconds=30)

_DURATION_SUFFIXES = {"s": 1, "m": 60, "h": 3600}


@dataclass
class Settings:
    """Configuration for the memory pipeline."""
    dedup_window: timedelta = DEFAULT_DEDUP_WINDOW
    dedup_fail_open: bool = True
    buffer_capacity: int = 100
    duplicate_threshold: float = 0.95
    relevance_threshold: float = 0.75
    retrieval_limit: int = 3
    retrieval_same_namespace: bool = False
    embedding_dimension: int = 384
    embedding_model: str = "all-MiniLM-L6-v2"
    collection_name: str = "k8s_incidents"
    chroma_persist_directory: str = "./chroma_db"
    redis_url: str = "redis://localhost:6379"
    cluster_id: str = "unknown-cluster"
    log_level: str = "INFO"
    log_format: str = "text"
    debounce_window: timedelta = DEFAULT_DEBOUNCE_WINDOW
    poll_interval: timedelta = DEFAULT_POLL_INTERVAL
    watch_namespace: Optional[str] = None
    reasoner: Optional[str] = None


# setting name -> environment variable
ENV_VARS = {
    "dedup_window": "DEDUPLICATION_WINDOW",
    "dedup_fail_open": "DEDUP_FAIL_OPEN",
    "buffer_capacity": "MEMORY_BUFFER_CAPACITY",
    "duplicate_threshold": "MEMORY_DUPLICATE_THRESHOLD",
    "relevance_threshold": "RETRIEVAL_RELEVANCE_THRESHOLD",
    "retrieval_limit": "RETRIEVAL_LIMIT",
    "retrieval_same_namespace": "RETRIEVAL_SAME_NAMESPACE",
    "embedding_dimension": "EMBEDDING_DIMENSION",
    "embedding_model": "EMBEDDING_MODEL",
    "collection_name": "MEMORY_COLLECTION",
    "chroma_persist_directory": "CHROMA_PERSIST_DIRECTORY",
    "redis_url": "REDIS_URL",
    "cluster_id": "CLUSTER_ID",
    "log_level": "LOG_LEVEL",
    "log_format": "LOG_FORMAT",
    "debounce_window": "DEBOUNCE_TTL",
    "poll_interval": "POLL_INTERVAL",
    "watch_namespace": "WATCH_NAMESPACE",
    "reasoner": "BRAIN_REASONER",
}


def parse_duration(value: Any) -> timedelta:
    """Parse a duration setting.

    Accepts a ``timedelta``, a number of seconds, ``HH:MM:SS`` (optionally
    prefixed with ``D.``), or a number with an ``s``/``m``/``h`` suffix.

    Raises:
        ConfigurationError: If the value is empty, unparsable or not positive.
    """
    if isinstance(value, timedelta):
        duration = value
    elif isinstance(value, bool) or value is None:
        raise ConfigurationError(f"Invalid duration: {value!r}")
    elif isinstance(value, (int, float)):
        duration = timedelta(seconds=value)
    else:
        text = str(value).strip().lower()
        duration = _parse_duration_text(text)

    if duration.total_seconds() <= 0:
        raise ConfigurationError(f"Duration must be positive: {value!r}")
    return duration


def _parse_duration_text(text: str) -> timedelta:
    if not text:
        raise ConfigurationError("Empty duration")

    match = re.fullmatch(r"(?:(\d+)\.)?(\d{1,2}):(\d{2}):(\d{2}(?:\.\d+)?)", text)
    if match:
        days, hours, minutes, seconds = match.groups()
        return timedelta(days=int(days or 0), hours=int(hours),
                         minutes=int(minutes), seconds=float(seconds))

    match = re.fullmatch(r"(\d+(?:\.\d+)?)\s*([smh]?)", text)
    if match:
        number, suffix = match.groups()
        return timedelta(seconds=float(number) * _DURATION_SUFFIXES.get(suffix, 1))

    raise ConfigurationError(f"Invalid duration: {text!r}")


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"Invalid boolean: {value!r}")


def _parse_positive_int(value: Any) -> int:
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"Invalid integer: {value!r}")
    if number <= 0:
        raise ConfigurationError(f"Integer must be positive: {value!r}")
    return number


def _parse_score(value: Any) -> float:
    try:
        number = float(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"Invalid score: {value!r}")
    if not 0.0 <= number <= 1.0:
        raise ConfigurationError(f"Score must be between 0 and 1: {value!r}")
    return number


def _parse_text(value: Any) -> str:
    text = str(value).strip()
    if not text:
        raise ConfigurationError("Empty value")
    return text


_PARSERS = {
    "dedup_window": parse_duration,
    "debounce_window": parse_duration,
    "poll_interval": parse_duration,
    "dedup_fail_open": _parse_bool,
    "buffer_capacity": _parse_positive_int,
    "duplicate_threshold": _parse_score,
    "relevance_threshold": _parse_score,
    "retrieval_limit": _parse_positive_int,
    "retrieval_same_namespace": _parse_bool,
    "embedding_dimension": _parse_positive_int,
}


def load_file_config(config_path: Optional[str]) -> Dict[str, Any]:
    """Load settings from a YAML file; returns an empty dict when no path is given."""
    if not config_path:
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")
    return data


def load_settings(config_path: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from an optional YAML file and the environment.

    Args:
        config_path: Optional YAML file with setting names as keys
        environ: Environment mapping (defaults to ``os.environ`` after loading ``.env``)

    Returns:
        Settings with every invalid value replaced by its default
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    raw: Dict[str, Any] = {}
    try:
        raw.update(load_file_config(config_path))
    except (OSError, yaml.YAMLError, ConfigurationError) as e:
        logger.warning(f"Could not read config file {config_path}: {e}. Using defaults.")

    for name, env_var in ENV_VARS.items():
        if environ.get(env_var) is not None:
            raw[name] = environ[env_var]

    defaults = Settings()
    values: Dict[str, Any] = {}
    for f in fields(Settings):
        default = getattr(defaults, f.name)
        if f.name not in raw:
            if f.name == "dedup_window":
                logger.warning(
                    f"DeduplicationWindow not configured. Defaulting to "
                    f"{default.total_seconds() / 60:g} minutes."
                )
            values[f.name] = default
            continue

        parser = _PARSERS.get(f.name, _parse_text)
        try:
            values[f.name] = parser(raw[f.name])
        except ConfigurationError as e:
            logger.warning(f"Invalid value for {f.name} ({e}). Defaulting to {default}.")
            values[f.name] = default

    return Settings(**values)
