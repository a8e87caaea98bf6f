"""Process configuration for the monitor service."""

from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field


DEFAULT_CONFIG_PATH = "config/parliament-monitor.yaml"


class ServiceConfig(BaseModel):
    """Where state lives and how often the service polls and flushes."""

    state_file: str = Field(default="data/parliament.json", description="Cluster document (groups and settings)")
    issues_file: Optional[str] = Field(default=None, description="Issue list; defaults to <state>.issues.json")

    poll_interval_seconds: float = Field(default=10.0, gt=0, description="Seconds between poll cycles")
    flush_interval_seconds: float = Field(default=10.0, gt=0, description="Seconds between alert flushes")
    alert_spacing_seconds: float = Field(default=0.25, ge=0, description="Delay between alerts in one batch")

    verify_tls: bool = Field(default=False, description="Verify TLS certificates of cluster endpoints")
    log_level: str = Field(default="INFO", description="Logging level")


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


def load_config(config_path: Optional[str] = None) -> ServiceConfig:
    """Load configuration from a YAML file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("PARLIAMENT_CONFIG", DEFAULT_CONFIG_PATH)

    config_data = {}

    if config_path and os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ValueError(f"{config_path} must contain a mapping")

    env_overrides = {
        "state_file": os.getenv("PARLIAMENT_STATE_FILE"),
        "issues_file": os.getenv("PARLIAMENT_ISSUES_FILE"),
        "poll_interval_seconds": os.getenv("PARLIAMENT_POLL_INTERVAL"),
        "log_level": os.getenv("LOG_LEVEL"),
        "verify_tls": os.getenv("PARLIAMENT_VERIFY_TLS"),
    }

    for key, value in env_overrides.items():
        if value is not None and value != "":
            if key == "poll_interval_seconds":
                value = float(value)
            elif key == "verify_tls":
                value = _as_bool(value)
            config_data[key] = value

    return ServiceConfig(**config_data)
