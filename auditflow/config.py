from __future__ import annotations

import os
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

from .utils.retry import RetryPolicy


class RetryConfig(BaseModel):
    """Delay schedules (seconds) for the two eventual-consistency retries."""

    seed_delays: List[float] = Field(default_factory=lambda: [0.2, 0.45, 0.9])
    visibility_delays: List[float] = Field(default_factory=lambda: [0.3, 0.6, 1.2])

    def seed_policy(self) -> RetryPolicy:
        return RetryPolicy.from_delays("seed-self-heal", self.seed_delays)

    def visibility_policy(self) -> RetryPolicy:
        return RetryPolicy.from_delays("template-visibility", self.visibility_delays)


class AuditRulesConfig(BaseModel):
    """Validation rules applied when audits are created."""

    title_min_length: int = 3
    title_max_length: int = 200
    domain_max_length: int = 50
    require_published_templates: bool = False


class AuditflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "WARNING"
    retry: RetryConfig = RetryConfig()
    audits: AuditRulesConfig = AuditRulesConfig()


def load_config(path: Optional[str] = None) -> AuditflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to AUDITFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("AUDITFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = AuditflowConfig(**data)
    else:
        config = AuditflowConfig()

    env_db_url = os.getenv("AUDITFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
