"""
Operator configuration.

The crawler reads a JSON document (default `config.json`) on every round.
Its SHA-256 content hash, extended with the bytes of any referenced
blacklist source files, decides whether anything needs to be re-applied:
identical bytes never trigger a reload.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

from peerlogger.common.crypto import sha256

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_FILE = "config.json"

DEFAULT_LOG_LEVEL = "info"
DEFAULT_CRAWL_INTERVAL = 30 * 60.0     # seconds
DEFAULT_DISCOVERY_TIMEOUT = 10.0       # seconds
DEFAULT_MAX_PARALLEL_CRAWLS = 100

IP_BLACKLIST_KEY = "ip_blacklists"
PUBKEY_BLACKLIST_KEY = "pubkey_blacklists"

# Config level names -> logging levels
LOG_LEVELS: dict[str, int] = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "panic": logging.CRITICAL,
}


class FatalConfigError(Exception):
    """The configuration file is unreadable or invalid."""


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: Union[int, float, str]) -> float:
    """Parse a duration into seconds.

    Numbers are taken as seconds; strings use Go syntax ("1h30m", "10s", "500ms").
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")
    text = value.strip()
    pos = 0
    total = 0.0
    for m in _DURATION_RE.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if not text or pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


# ---------------------------------------------------------------------------
# Config documents
# ---------------------------------------------------------------------------

def _string_list(name: str, value: Any) -> list[str]:
    if not isinstance(value, list):
        raise ValueError(f"'{name}' must be an array")
    result = []
    for item in value:
        if isinstance(item, str):
            result.append(item)
        else:
            logger.warning("Skipping non-string entry in '%s': %r", name, item)
    return result


@dataclass
class AppConfig:
    """Values read from the JSON configuration file.

    After `load_config`, the blacklist lists hold the inline entries followed
    by the entries of the referenced source files.
    """
    log_level: str = DEFAULT_LOG_LEVEL
    ip_blacklist: list[str] = field(default_factory=list)
    pubkey_blacklist: list[str] = field(default_factory=list)
    ip_blacklist_path: str = ""
    pubkey_blacklist_path: str = ""
    crawl_interval: float = DEFAULT_CRAWL_INTERVAL
    discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT
    max_parallel_crawls: int = DEFAULT_MAX_PARALLEL_CRAWLS
    nodes_top_n: int = 0

    @classmethod
    def from_json(cls, data: Any) -> AppConfig:
        """Apply a parsed JSON document over the defaults, validating it."""
        if not isinstance(data, dict):
            raise ValueError("config document must be a JSON object")
        cfg = cls()

        if "log_level" in data:
            level = data["log_level"]
            if not isinstance(level, str) or level.lower() not in LOG_LEVELS:
                raise ValueError(f"invalid log_level: {level!r}")
            cfg.log_level = level.lower()
        if "ip_blacklist" in data:
            cfg.ip_blacklist = _string_list("ip_blacklist", data["ip_blacklist"])
        if "pubkey_blacklist" in data:
            cfg.pubkey_blacklist = _string_list("pubkey_blacklist", data["pubkey_blacklist"])
        for key in ("ip_blacklist_path", "pubkey_blacklist_path"):
            if key in data:
                if not isinstance(data[key], str):
                    raise ValueError(f"'{key}' must be a string")
                setattr(cfg, key, data[key])
        if "crawl_interval" in data:
            cfg.crawl_interval = parse_duration(data["crawl_interval"])
            if cfg.crawl_interval <= 0:
                raise ValueError("crawl_interval must be positive")
        if "discovery_timeout" in data:
            cfg.discovery_timeout = parse_duration(data["discovery_timeout"])
            if cfg.discovery_timeout <= 0:
                raise ValueError("discovery_timeout must be positive")
        if "max_parallel_crawls" in data:
            workers = data["max_parallel_crawls"]
            if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
                raise ValueError(f"invalid max_parallel_crawls: {workers!r}")
            cfg.max_parallel_crawls = workers
        if "nodes_top_n" in data:
            top_n = data["nodes_top_n"]
            if isinstance(top_n, bool) or not isinstance(top_n, int) or top_n < 0:
                raise ValueError(f"invalid nodes_top_n: {top_n!r}")
            cfg.nodes_top_n = top_n
        return cfg


def load_json_list(path: str, key: str) -> list[str]:
    """Read a string array stored under `key` in a JSON file.

    Any problem (missing file, invalid JSON, missing key, non-array value)
    degrades to an empty list. Non-string elements are skipped.
    """
    try:
        with open(path, "rb") as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning("Blacklist file not found: %s", path)
        return []
    except (OSError, ValueError) as e:
        logger.warning("Could not read blacklist file %s: %s", path, e)
        return []

    if not isinstance(data, dict) or key not in data:
        logger.warning("Key '%s' not found in %s", key, path)
        return []
    values = data[key]
    if not isinstance(values, list):
        logger.warning("Key '%s' in %s is not an array", key, path)
        return []
    return [v for v in values if isinstance(v, str)]


def _read_optional(path: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError:
        return b""


def load_config(path: str = DEFAULT_CONFIG_FILE) -> tuple[AppConfig, bytes]:
    """Load the config file and return (config, content hash).

    Raises FatalConfigError if the file cannot be read or parsed.
    """
    try:
        content = Path(path).read_bytes()
    except OSError as e:
        raise FatalConfigError(f"cannot read config file {path}: {e}") from e
    try:
        cfg = AppConfig.from_json(json.loads(content))
    except ValueError as e:
        raise FatalConfigError(f"invalid config file {path}: {e}") from e

    hashed = content
    for source in (cfg.ip_blacklist_path, cfg.pubkey_blacklist_path):
        if source:
            hashed += b"\x00" + source.encode("utf-8") + b"\x00" + _read_optional(source)

    if cfg.ip_blacklist_path:
        cfg.ip_blacklist = cfg.ip_blacklist + load_json_list(cfg.ip_blacklist_path, IP_BLACKLIST_KEY)
    if cfg.pubkey_blacklist_path:
        cfg.pubkey_blacklist = cfg.pubkey_blacklist + load_json_list(
            cfg.pubkey_blacklist_path, PUBKEY_BLACKLIST_KEY,
        )
    return cfg, sha256(hashed)


# ---------------------------------------------------------------------------
# Effective configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EffectiveConfig:
    """Immutable snapshot of the settings a crawl round runs with."""
    config_hash: bytes
    crawl_interval: float = DEFAULT_CRAWL_INTERVAL
    discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT
    max_parallel_crawls: int = DEFAULT_MAX_PARALLEL_CRAWLS
    ip_blacklist: tuple[str, ...] = ()
    pubkey_blacklist: tuple[str, ...] = ()
    log_level: str = DEFAULT_LOG_LEVEL
    nodes_top_n: int = 0

    @classmethod
    def from_app_config(cls, cfg: AppConfig, config_hash: bytes) -> EffectiveConfig:
        return cls(
            config_hash=config_hash,
            crawl_interval=cfg.crawl_interval,
            discovery_timeout=cfg.discovery_timeout,
            max_parallel_crawls=cfg.max_parallel_crawls,
            ip_blacklist=tuple(cfg.ip_blacklist),
            pubkey_blacklist=tuple(cfg.pubkey_blacklist),
            log_level=cfg.log_level,
            nodes_top_n=cfg.nodes_top_n,
        )


def apply_log_level(level: str, logger_name: str = "peerlogger") -> None:
    """Set the level of the application logger from a config level name."""
    logging.getLogger(logger_name).setLevel(LOG_LEVELS.get(level.lower(), logging.INFO))
