import logging
import os
import re
from typing import Any, List, Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from rewrite_proxy.errors import ConfigError

logger = logging.getLogger("uvicorn.error")

DEFAULT_STRATEGY = "round_robin"
# Recognised so configs written for them fail with a clear message
KNOWN_STRATEGIES = {"round_robin", "weighted_round_robin", "least_connections"}
LOG_LEVELS = {"debug", "info", "warn", "warning", "error", "critical"}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|ns|h|m|s)")
_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 0.001,
    "us": 0.000001,
    "µs": 0.000001,
    "ns": 0.000000001,
}


def parse_duration(value: Union[int, float, str]) -> float:
    """
    Convert a duration to seconds.

    Numbers are taken as seconds. Strings use Go-style unit suffixes, e.g.
    ``"30s"``, ``"500ms"`` or ``"1m30s"``.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        raise ValueError("duration must not be empty")
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    position = 0
    for part in _DURATION_PART.finditer(text):
        if part.start() != position:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(part.group(1)) * _DURATION_UNITS[part.group(2)]
        position = part.end()
    if position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def _duration_field(value: Any) -> float:
    seconds = parse_duration(value)
    if seconds < 0:
        raise ValueError("duration must not be negative")
    return seconds


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080
    shutdown_grace_period: float = 30.0
    max_body_size: int = 10 * 1024 * 1024

    @field_validator("shutdown_grace_period", mode="before")
    @classmethod
    def parse_grace_period(cls, v):
        return _duration_field(v)

    @field_validator("port")
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("max_body_size")
    @classmethod
    def validate_max_body_size(cls, v):
        if v < 0:
            raise ValueError("max_body_size must not be negative")
        return v


class HealthCheckConfig(BaseModel):
    enabled: bool = True
    interval: float = 30.0
    path: str = "/health"
    timeout: float = 5.0

    @field_validator("interval", "timeout", mode="before")
    @classmethod
    def parse_durations(cls, v):
        return _duration_field(v)

    @field_validator("path")
    @classmethod
    def normalize_path(cls, v):
        return v if v.startswith("/") else "/" + v


class TargetConfig(BaseModel):
    base_url: Optional[str] = None
    urls: List[str] = Field(default_factory=list)
    timeout: float = 30.0
    strategy: str = DEFAULT_STRATEGY
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)

    @field_validator("timeout", mode="before")
    @classmethod
    def parse_timeout(cls, v):
        return _duration_field(v)

    @field_validator("strategy", mode="before")
    @classmethod
    def default_strategy(cls, v):
        return v or DEFAULT_STRATEGY

    @field_validator("strategy")
    @classmethod
    def validate_strategy(cls, v):
        if v not in KNOWN_STRATEGIES:
            raise ValueError(f"unsupported load balancing strategy: {v}")
        return v

    @model_validator(mode="after")
    def validate_urls(self):
        if not self.base_url and not self.urls:
            raise ValueError("target requires base_url or urls")
        if self.base_url and self.urls:
            logger.warning("[Config] Both base_url and urls are set, using urls")
        for raw in self.target_urls():
            parsed = urlparse(raw)
            if not parsed.scheme or not parsed.netloc:
                raise ValueError(
                    f"invalid target URL {raw!r}: scheme and host are required"
                )
        return self

    def target_urls(self) -> List[str]:
        if self.urls:
            return list(self.urls)
        if self.base_url:
            return [self.base_url]
        return []

    def is_multi_target(self) -> bool:
        return len(self.target_urls()) > 1


class LoggingConfig(BaseModel):
    level: str = "info"
    file: Optional[str] = None

    @field_validator("level")
    @classmethod
    def validate_level(cls, v):
        v = (v or "info").lower()
        if v not in LOG_LEVELS:
            raise ValueError(f"level must be one of: {sorted(LOG_LEVELS)}")
        return v


class RulesConfig(BaseModel):
    file: Optional[str] = None
    files: List[str] = Field(default_factory=list)
    auto_reload: bool = True

    @model_validator(mode="after")
    def validate_paths(self):
        if not self.file and not self.files:
            raise ValueError("rules requires file or files")
        for path in self.paths():
            if not os.path.exists(path):
                raise ValueError(f"rules file does not exist: {path}")
        return self

    def paths(self) -> List[str]:
        ordered: List[str] = []
        for path in [*self.files, self.file]:
            if path and path not in ordered:
                ordered.append(path)
        return ordered


class DebugConfig(BaseModel):
    enabled: bool = False
    show_original: bool = True
    show_modified: bool = True
    show_rule_matches: bool = True


class ProxyConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    target: TargetConfig
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    rules: RulesConfig
    debug: DebugConfig = Field(default_factory=DebugConfig)

    def address(self) -> str:
        return f"{self.server.host}:{self.server.port}"

    def target_urls(self) -> List[str]:
        return self.target.target_urls()

    def is_multi_target(self) -> bool:
        return self.target.is_multi_target()

    def rule_paths(self) -> List[str]:
        return self.rules.paths()

    def should_show_original(self) -> bool:
        return self.debug.enabled and self.debug.show_original

    def should_show_modified(self) -> bool:
        return self.debug.enabled and self.debug.show_modified

    def should_show_rule_matches(self) -> bool:
        return self.debug.enabled and self.debug.show_rule_matches


def _resolve_relative(config: dict, base_dir: str) -> dict:
    rules = config.get("rules")
    if not isinstance(rules, dict):
        return config

    def resolve(path):
        if isinstance(path, str) and path and not os.path.isabs(path):
            candidate = os.path.join(base_dir, path)
            if not os.path.exists(path) and os.path.exists(candidate):
                return candidate
        return path

    rules = dict(rules)
    if "file" in rules:
        rules["file"] = resolve(rules["file"])
    if isinstance(rules.get("files"), list):
        rules["files"] = [resolve(p) for p in rules["files"]]
    return {**config, "rules": rules}


def load_config(path: str) -> ProxyConfig:
    """
    Read and validate the proxy configuration file.

    Relative rule paths are resolved against the working directory first and
    then against the directory holding the config file.
    """
    if not os.path.exists(path):
        raise ConfigError(f"config file does not exist: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config file {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"failed to read config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")

    data = _resolve_relative(data, os.path.dirname(os.path.abspath(path)))
    try:
        return ProxyConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration in {path}: {e}") from e
