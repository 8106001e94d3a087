from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field


class EngineSettings(BaseModel):
    """Execution engine tuning."""

    max_activities_per_execution: int = Field(default=1000, ge=1)
    lock_ttl_seconds: float = Field(default=300.0, gt=0)
    lock_retry_attempts: int = Field(default=3, ge=0)
    lock_retry_delay: float = Field(default=0.05, ge=0)
    max_retry_attempts: int = Field(default=3, ge=0)
    save_retry_attempts: int = Field(default=3, ge=1)


class WorkerSettings(BaseModel):
    """Background timer and job loop settings."""

    timer_interval: float = Field(default=10.0, gt=0)
    job_interval: float = Field(default=5.0, gt=0)
    batch_size: int = Field(default=50, ge=1)
    lock_ttl_seconds: float = Field(default=60.0, gt=0)
    job_max_attempts: int = Field(default=3, ge=1)
    job_retry_delay: float = Field(default=2.0, ge=0)


class FlowmarkConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    engine: EngineSettings = EngineSettings()
    workers: WorkerSettings = WorkerSettings()


def load_config(path: Optional[str] = None) -> FlowmarkConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWMARK_CONFIG env
            variable or 'flowmark.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWMARK_CONFIG", "flowmark.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowmarkConfig(**data)
    else:
        config = FlowmarkConfig()

    env_db_url = os.getenv("FLOWMARK_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
