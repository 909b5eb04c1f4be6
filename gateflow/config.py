from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_SWEEP_MAX_AGE_HOURS


class EngineConfig(BaseModel):
    """Defaults applied to runs unless a workflow overrides them."""

    default_concurrency: Optional[int] = Field(default=None, ge=1)
    approval_timeout: Optional[float] = None
    on_approval_timeout: Literal["wait", "fail"] = "wait"
    rejection_outcome: Literal["completed", "error"] = "completed"
    sweep_max_age_hours: float = DEFAULT_SWEEP_MAX_AGE_HOURS


class ProviderConfig(BaseModel):
    """Generation provider HTTP settings."""

    base_url: Optional[str] = None
    request_timeout: float = 120.0


class GateflowConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    provider: ProviderConfig = ProviderConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> GateflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to GATEFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("GATEFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = GateflowConfig(**data)
    else:
        config = GateflowConfig()

    env_db_url = os.getenv("GATEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_base_url = os.getenv("GATEFLOW_BASE_URL")
    if env_base_url:
        config.provider.base_url = env_base_url
    env_level = os.getenv("GATEFLOW_LOG_LEVEL")
    if env_level:
        config.log_level = env_level
    return config
