"""Runtime configuration for the studioflow server."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped,unused-ignore]
from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigError

STUDIO_PLUGIN_PORT = 44755
ENV_PREFIX = "STUDIOFLOW_"


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for retryable gateway failures."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    initial_backoff_s: float = Field(default=0.5, ge=0.0)
    max_backoff_s: float = Field(default=8.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> RetryPolicy:
        if self.max_backoff_s < self.initial_backoff_s:
            raise ValueError("max_backoff_s must be >= initial_backoff_s")
        return self

    def backoff_for(self, attempt: int) -> float:
        """Delay to wait after failed ``attempt`` (1-based)."""

        delay = self.initial_backoff_s * (self.multiplier ** (attempt - 1))
        return min(self.max_backoff_s, delay)


class StudioFlowConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=STUDIO_PLUGIN_PORT, ge=1, le=65535)
    lease_ttl_s: float = Field(default=30.0, gt=0)
    sweep_interval_s: float = Field(default=2.0, gt=0)
    session_idle_timeout_s: float = Field(default=1800.0, gt=0)
    default_holder: str = Field(default="studio", min_length=1)
    max_feedback_rounds: int = Field(default=8, ge=0)
    plan_history: int = Field(default=32, ge=1)
    gemini_model: str = "gemini-2.5-pro"
    gemini_timeout_s: float = Field(default=60.0, gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


_ENV_FIELDS: dict[str, tuple[str, ...]] = {
    "HOST": ("host",),
    "PORT": ("port",),
    "LEASE_TTL_S": ("lease_ttl_s",),
    "SWEEP_INTERVAL_S": ("sweep_interval_s",),
    "SESSION_IDLE_TIMEOUT_S": ("session_idle_timeout_s",),
    "DEFAULT_HOLDER": ("default_holder",),
    "MAX_FEEDBACK_ROUNDS": ("max_feedback_rounds",),
    "PLAN_HISTORY": ("plan_history",),
    "GEMINI_MODEL": ("gemini_model",),
    "GEMINI_TIMEOUT_S": ("gemini_timeout_s",),
    "RETRY_MAX_ATTEMPTS": ("retry", "max_attempts"),
    "RETRY_INITIAL_BACKOFF_S": ("retry", "initial_backoff_s"),
    "RETRY_MAX_BACKOFF_S": ("retry", "max_backoff_s"),
}


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return payload


def _apply_env(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    merged = dict(data)
    for suffix, path in _ENV_FIELDS.items():
        raw = environ.get(ENV_PREFIX + suffix)
        if raw is None or raw == "":
            continue
        if len(path) == 1:
            merged[path[0]] = raw
        else:
            section = dict(merged.get(path[0]) or {})
            section[path[1]] = raw
            merged[path[0]] = section
    return merged


def load_config(
    path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> StudioFlowConfig:
    """Build a config from an optional YAML file, ``STUDIOFLOW_*`` env vars and overrides.

    Later sources win: file < environment < explicit overrides.
    """

    data: dict[str, Any] = _read_yaml(Path(path)) if path is not None else {}
    data = _apply_env(data, os.environ if environ is None else environ)
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value
    try:
        return StudioFlowConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc


__all__ = ["ENV_PREFIX", "RetryPolicy", "STUDIO_PLUGIN_PORT", "StudioFlowConfig", "load_config"]
