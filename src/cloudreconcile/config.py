"""XDG config loading/saving for engine defaults."""

from __future__ import annotations

import os
import sys
from contextlib import suppress
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

from cloudreconcile.backoff import BackoffPolicy
from cloudreconcile.classifier import ErrorClassifier

DEFAULT_CONFIG_PATH = Path("~/.config/cloudreconcile/config.toml").expanduser()
CONFIG_PATH_ENV = "CLOUDRECONCILE_CONFIG"
DEFAULT_BASE_DELAY = 1.0
DEFAULT_GROWTH = 2.0
DEFAULT_JITTER_RATIO = 0.25
DEFAULT_MAX_DELAY = 30.0
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_TIMEOUT = 600.0
DEFAULT_LOG_LEVEL = "INFO"

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARN", "WARNING", "ERROR"}
_FLOAT_FIELDS = (
    "base_delay",
    "growth",
    "jitter_ratio",
    "max_delay",
    "poll_interval",
    "initial_delay",
    "create_timeout",
    "update_timeout",
    "delete_timeout",
)


class EngineConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    base_delay: float = Field(default=DEFAULT_BASE_DELAY, ge=0)
    growth: float = Field(default=DEFAULT_GROWTH, ge=0)
    jitter_ratio: float = Field(default=DEFAULT_JITTER_RATIO, ge=0, le=1)
    max_delay: float = Field(default=DEFAULT_MAX_DELAY, ge=0)
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, ge=0)
    initial_delay: float = Field(default=0.0, ge=0)
    create_timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    update_timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    delete_timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    extra_retryable_codes: list[str] = Field(default_factory=list)
    log_level: str = DEFAULT_LOG_LEVEL

    def to_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_delay=self.base_delay,
            growth=self.growth,
            jitter_ratio=self.jitter_ratio,
            max_delay=self.max_delay,
        )

    def to_classifier(self) -> ErrorClassifier:
        return ErrorClassifier(extra_retryable_codes=self.extra_retryable_codes)

    def timeout_for(self, operation: str) -> float:
        timeouts = {
            "create": self.create_timeout,
            "update": self.update_timeout,
            "delete": self.delete_timeout,
        }
        try:
            return timeouts[operation]
        except KeyError as exc:
            raise ValueError(f"Unknown operation: {operation}") from exc


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        env_path = os.getenv(CONFIG_PATH_ENV, "").strip()
        if env_path:
            return Path(env_path).expanduser()
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _toml_scalar(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(float(value)) if isinstance(value, float) else str(value)
    if isinstance(value, str):
        return f'"{_escape(value)}"'
    if isinstance(value, list):
        return "[" + ", ".join(_toml_scalar(item) for item in value) + "]"
    raise TypeError(f"Unsupported TOML scalar type: {type(value)!r}")


def _normalize_codes(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    normalized: list[str] = []
    seen: set[str] = set()
    for item in value:
        if not isinstance(item, str):
            continue
        code = item.strip()
        if not code or code in seen:
            continue
        seen.add(code)
        normalized.append(code)
    return normalized


def _sanitize(raw: dict[str, object]) -> EngineConfig:
    cfg = EngineConfig()

    for name in _FLOAT_FIELDS:
        value = raw.get(name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        with suppress(ValueError):
            setattr(cfg, name, float(value))

    if cfg.max_delay < cfg.base_delay:
        cfg.base_delay = DEFAULT_BASE_DELAY
        cfg.max_delay = DEFAULT_MAX_DELAY

    cfg.extra_retryable_codes = _normalize_codes(raw.get("extra_retryable_codes", []))

    log_level = raw.get("log_level", cfg.log_level)
    if isinstance(log_level, str) and log_level.upper() in _VALID_LOG_LEVELS:
        cfg.log_level = log_level.upper()

    return cfg


def load_config(path: str | Path | None = None) -> EngineConfig:
    resolved = get_config_path(path)
    if not resolved.exists():
        return EngineConfig()
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError):
        return EngineConfig()
    if not isinstance(raw, dict):
        return EngineConfig()
    return _sanitize(raw)


def save_config(config: EngineConfig, path: str | Path | None = None) -> Path:
    resolved = get_config_path(path)
    resolved.parent.mkdir(parents=True, exist_ok=True)

    lines = [f"{name} = {_toml_scalar(getattr(config, name))}" for name in _FLOAT_FIELDS]
    lines.extend(
        [
            f"extra_retryable_codes = {_toml_scalar(_normalize_codes(config.extra_retryable_codes))}",
            f"log_level = {_toml_scalar(config.log_level)}",
        ]
    )

    resolved.write_text("\n".join(lines) + "\n", encoding="utf-8")
    with suppress(OSError):
        resolved.chmod(0o600)
    return resolved
