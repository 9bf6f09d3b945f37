"""
Configuration for the rms supervisor.

Settings come from a JSON document (./config.json by default, or the path
in RMS_CONFIG) laid over built-in defaults. Every setting can then be
overridden by an environment variable named after its path, e.g.
rms_minecraft_max_memory or rms_cache_quota_percentage.
"""

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path

from dotenv import load_dotenv

from .units import SizeValue, parse_duration

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.json"
ENV_PREFIX = "rms"

_DECIMAL_PATTERN = re.compile(r"^[+-]?\d+\.\d+$")
_INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")


@dataclass
class MinecraftConfig:
    """The supervised server and where its world lives."""

    version: str = "1.12.2"
    min_memory: str = "1G"
    max_memory: str = "2G"
    level_name: str = "world"
    server_dir: str = "."
    backup_dir: str = "./backup"
    java: str = "java"


@dataclass
class QuotaConfig:
    """Cache occupancy alerting and automatic restart."""

    alert: bool = True
    percentage: int = 80
    auto: bool = True
    alert_interval: float = 60.0
    grace_period: float = 60.0


@dataclass
class CacheConfig:
    """RAM disk backing the world directory."""

    active: bool = True
    min_size: str = "256M"
    sync_every: str = "5m"
    quota: QuotaConfig = field(default_factory=QuotaConfig)


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = ""
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5


@dataclass
class ApiConfig:
    """Local HTTP control surface, off by default."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9901


@dataclass
class Config:
    """rms configuration."""

    minecraft: MinecraftConfig = field(default_factory=MinecraftConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    # Seconds to wait after "save-all" before copying. The server never
    # acknowledges a save, so this is a best guess, not a guarantee.
    save_flush_delay: float = 2.0

    @property
    def server_dir(self) -> Path:
        return Path(self.minecraft.server_dir)

    @property
    def world_dir(self) -> Path:
        """Live world directory, also the cache volume mount point."""
        return self.server_dir / self.minecraft.level_name

    @property
    def backup_root(self) -> Path:
        return Path(self.minecraft.backup_dir)

    @property
    def backup_world_dir(self) -> Path:
        return self.backup_root / self.minecraft.level_name

    @property
    def cache_min_size(self) -> SizeValue:
        return SizeValue(self.cache.min_size)

    @property
    def sync_interval_ms(self) -> int:
        return parse_duration(self.cache.sync_every)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        return _build(cls, data)


def _build(cls, data: dict):
    """Build a (nested) dataclass from a dict, ignoring unknown keys."""
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        default = f.default_factory() if callable(f.default_factory) else f.default
        if is_dataclass(default) and isinstance(value, dict):
            value = _build(type(default), value)
        kwargs[f.name] = value
    return cls(**kwargs)


def _merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def parse_env_value(value: str):
    """
    Convert an environment variable's text to the value it stands for.

    Integers and decimals become numbers, true/false (any case) become
    booleans, JSON is decoded, anything else stays text.
    """
    if value is None:
        return None
    text = value.strip()
    if text == "":
        return None

    if _INTEGER_PATTERN.match(text):
        return int(text)
    if _DECIMAL_PATTERN.match(text):
        return float(text)

    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return value


def apply_env_overrides(data: dict, prefix: str = ENV_PREFIX, environ=None) -> dict:
    """
    Override leaf values of a nested dict from environment variables.

    The variable for data["cache"]["quota"]["percentage"] is
    <prefix>_cache_quota_percentage; its upper-case form is accepted too.
    Blank variables are ignored.
    """
    if environ is None:
        environ = os.environ

    def walk(node: dict, path: list[str]) -> dict:
        result = {}
        for key, value in node.items():
            key_path = path + [key]
            if isinstance(value, dict):
                result[key] = walk(value, key_path)
                continue

            name = "_".join([prefix] + key_path) if prefix else "_".join(key_path)
            raw = environ.get(name)
            if raw is None:
                raw = environ.get(name.upper())
            if raw is not None and raw.strip() != "":
                logger.debug(f"Setting {'.'.join(key_path)} from {name}")
                value = parse_env_value(raw)
            result[key] = value
        return result

    return walk(data, [])


def load_config(path=None, prefix: str = ENV_PREFIX, environ=None) -> Config:
    """Load the configuration document, then apply environment overrides."""
    if environ is None:
        environ = os.environ
    if path is None:
        path = environ.get("RMS_CONFIG", DEFAULT_CONFIG_FILE)
    path = Path(path)

    data = Config().to_dict()
    if path.exists():
        with open(path) as f:
            data = _merge(data, json.load(f))
    else:
        logger.info(f"No configuration file at {path}, using defaults")

    data = apply_env_overrides(data, prefix=prefix, environ=environ)
    config = Config.from_dict(data)

    # A bad size is fatal, a bad sync interval only warns later on.
    try:
        SizeValue(config.cache.min_size)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid cache.min_size: {e}") from e
    return config
