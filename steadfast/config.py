"""Worker configuration: a YAML file plus environment overrides."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .constants import DEFAULT_INSPECT_URL, DEFAULT_RETENTION_DAYS

CONFIG_ENV = "STEADFAST_CONFIG"
DATABASE_URL_ENVS = ("STEADFAST_DATABASE_URL", "DATABASE_URL")
PROGRESS_BACKEND_ENV = "STEADFAST_PROGRESS_BACKEND"


class RedisSettings(BaseModel):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class ProgressSettings(BaseModel):
    """Where progress events are fanned out to subscribers."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisSettings = Field(default_factory=RedisSettings)


class AlertSettings(BaseModel):
    """Operator channel for failed executions.

    ``inspect_url`` is formatted with ``execution_id`` to build the history
    deep link carried by every alert.
    """

    backend: Literal["log", "webhook"] = "log"
    webhook_url: Optional[str] = None
    inspect_url: str = DEFAULT_INSPECT_URL


class SteadfastConfig(BaseModel):
    database_url: Optional[str] = None
    retention_days: int = DEFAULT_RETENTION_DAYS
    pools: Dict[str, int] = Field(default_factory=dict)
    progress: ProgressSettings = Field(default_factory=ProgressSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)

    @field_validator("pools")
    @classmethod
    def _positive_caps(cls, pools: Dict[str, int]) -> Dict[str, int]:
        for name, cap in pools.items():
            if cap < 1:
                raise ValueError(f"pool {name!r} needs a cap of at least 1, got {cap}")
        return pools

    def apply_env(self) -> "SteadfastConfig":
        """Apply environment overrides in place and return ``self``."""
        database_url = next(
            (os.environ[name] for name in DATABASE_URL_ENVS if os.getenv(name)), None
        )
        if database_url:
            self.database_url = database_url
        backend = os.getenv(PROGRESS_BACKEND_ENV)
        if backend:
            self.progress.backend = backend.lower()
        return self


def load_config(path: Optional[str] = None) -> SteadfastConfig:
    """Read ``path`` (or ``$STEADFAST_CONFIG``, or ``./config.yaml``) if present.

    A missing file yields the defaults; environment overrides apply either way.
    """
    config_file = Path(path or os.getenv(CONFIG_ENV, "config.yaml"))
    data = {}
    if config_file.is_file():
        data = yaml.safe_load(config_file.read_text()) or {}
    return SteadfastConfig.model_validate(data).apply_env()
