from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_DELIVERY_TIMEOUT_SECONDS,
    DEFAULT_LEASE_SECONDS,
    DEFAULT_LINKS_BASE_URL,
    DEFAULT_MAX_STEPS_PER_PASS,
    DEFAULT_MAX_WORKERS,
    DEFAULT_TICK_INTERVAL_SECONDS,
)


class SchedulerConfig(BaseModel):
    """Settings for the tick driver and its worker pool."""

    tick_interval: float = DEFAULT_TICK_INTERVAL_SECONDS
    batch_size: int = DEFAULT_BATCH_SIZE
    max_workers: int = DEFAULT_MAX_WORKERS
    lease_seconds: float = DEFAULT_LEASE_SECONDS
    max_steps_per_pass: int = DEFAULT_MAX_STEPS_PER_PASS


class DeliveryConfig(BaseModel):
    """Settings applied to every delivery provider call."""

    timeout: float = DEFAULT_DELIVERY_TIMEOUT_SECONDS
    links_base_url: str = DEFAULT_LINKS_BASE_URL


class NurtureConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    halt_in_flight_on_pause: bool = False
    scheduler: SchedulerConfig = SchedulerConfig()
    delivery: DeliveryConfig = DeliveryConfig()


def load_config(path: Optional[str] = None) -> NurtureConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to NURTURE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("NURTURE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = NurtureConfig(**data)
    else:
        config = NurtureConfig()

    env_db_url = os.getenv("NURTURE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
